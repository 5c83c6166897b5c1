"""Filing deadline and reminder scheduling engine for accounting practices."""

__version__ = "0.1.0"
