"""Document store models and merge helpers."""
