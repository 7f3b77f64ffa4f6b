"""Day planner MCP server: calendar, email and task tools backed by Google."""

__version__ = "0.1.0"
