"""Client-side consistency layer for a social feed backed by a hosted database."""

__version__ = "0.1.0"
