"""enrd: exposure-notification router daemon."""

__version__ = "0.3.0"
