"""Delayed HTTP task queue."""
