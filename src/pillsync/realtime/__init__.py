"""Realtime JSON tree store."""
