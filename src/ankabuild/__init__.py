"""Build macOS VM templates by driving the anka CLI."""

__version__ = "0.1.0"
