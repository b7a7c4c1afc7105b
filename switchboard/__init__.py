"""Switchboard - outbound webhook dispatch and message status tracking."""
__version__ = "0.1.0"
