"""Tag-based mail forwarding service."""

__version__ = "0.1.0"
