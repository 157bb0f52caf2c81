"""Core primitives: typed errors and structured logging."""
