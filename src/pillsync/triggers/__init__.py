"""Store change triggers."""
