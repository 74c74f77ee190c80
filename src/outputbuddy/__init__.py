"""outputbuddy — flexible output redirection with color preservation."""

__version__ = "2.1.0"
