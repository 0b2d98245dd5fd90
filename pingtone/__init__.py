"""PingTone: Cisco UCM cluster synchronization service."""

__version__ = "0.1.0"
