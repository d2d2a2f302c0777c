"""Core infrastructure: configuration, logging and time access."""
