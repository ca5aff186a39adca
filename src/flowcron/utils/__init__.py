"""flowcron utilities."""
