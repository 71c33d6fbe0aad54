"""Cross-store synchronization handlers."""
