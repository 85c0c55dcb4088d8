"""inboxsync - Gmail connection lifecycle manager."""

__version__ = "0.3.0"
