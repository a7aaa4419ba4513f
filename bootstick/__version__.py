"""Version information for bootstick."""

__version__ = "0.4.0"
