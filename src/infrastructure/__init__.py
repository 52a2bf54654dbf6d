"""Infrastructure layer - HTTP sessions and resource locking."""
