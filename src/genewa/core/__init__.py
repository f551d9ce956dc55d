"""Process-wide infrastructure: logging and metrics."""
