"""Live identity checks for proctored interviews."""

__version__ = "1.0.0"
