"""wowowify: turn a free-text instruction into an overlaid image."""

__version__ = "0.1.0"
