"""Push delivery and notification records."""
