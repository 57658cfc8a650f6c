"""Session state management for creative-lens tool servers."""

__version__ = "0.1.0"
