"""Core utilities: errors, security, encryption, middleware."""
