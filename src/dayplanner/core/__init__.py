"""Core planner primitives: slot search, period resolution, batching and Google plumbing."""
