"""profilevault: crash-consistent backup and restore for user profiles."""

__version__ = "0.1.0"
