"""Build gating coordinator for private package dependency graphs."""

__version__ = "0.1.0"
