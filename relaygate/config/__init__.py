"""Configuration package for Relaygate."""

from .base import BaseSettings
from .database import DatabaseConfig
from .gateway import GatewaySettings

__all__ = ["BaseSettings", "DatabaseConfig", "GatewaySettings"]
