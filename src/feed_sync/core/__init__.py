"""Configuration and error types shared across the client layer."""
