"""Guard daemon for a single, frequently rewritten JSON state file."""

__version__ = "1.1.0"
