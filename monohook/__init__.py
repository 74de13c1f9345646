"""
monohook - a single HTTP webhook endpoint that executes a command.
"""

__version__ = "1.0.0"
