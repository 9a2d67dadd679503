"""Relaygate: session gateway between a hosted WhatsApp relay and an AI chat backend."""

__version__ = "0.1.0"
