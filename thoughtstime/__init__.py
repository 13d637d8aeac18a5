"""Thoughts & Time - local persistence core for notes, tasks and journal entries."""

__version__ = "0.1.0"
