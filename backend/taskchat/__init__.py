"""Taskchat: real-time messaging backend for the task management app."""

__version__ = "0.1.0"
