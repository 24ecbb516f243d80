"""Task registry: the single owner of task state."""
