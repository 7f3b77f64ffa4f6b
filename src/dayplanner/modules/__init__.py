"""Pluggable planner modules (calendar, email, tasks)."""
