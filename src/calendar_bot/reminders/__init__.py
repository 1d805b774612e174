"""Reminder rendering and dispatch."""
