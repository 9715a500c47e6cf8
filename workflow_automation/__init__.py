"""Workflow automation engine: graph workflows, node executors and cron scheduling."""

__version__ = "1.0.0"
