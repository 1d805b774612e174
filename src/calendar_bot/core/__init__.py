"""Process-wide infrastructure: logging and tracing."""
