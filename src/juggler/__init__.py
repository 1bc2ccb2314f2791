"""Juggler: a personal task manager that syncs to Google Tasks."""

__version__ = "0.4.0"
