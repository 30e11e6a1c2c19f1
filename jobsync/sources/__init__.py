"""Concrete mail transports."""

from .imap_transport import ImapTransport

__all__ = ["ImapTransport"]
