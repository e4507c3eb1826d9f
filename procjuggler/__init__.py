"""Supervise local development processes: config, terminal children, restarts, logs and state."""

__version__ = "0.1.0"