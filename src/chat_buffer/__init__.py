"""Inbound WhatsApp message buffering and conversation-state coordinator."""

__version__ = "0.1.0"
