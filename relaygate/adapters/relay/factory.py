"""Select the relay backend from configuration."""

import logging

from relaygate.config.gateway import GatewaySettings
from relaygate.core.exceptions import ConfigurationError

from .base import RelayClient
from .flyio import FlyioRelayClient
from .koyeb import KoyebRelayClient

logger = logging.getLogger(__name__)

PROVIDER_ALIASES = {
    "koyeb": "koyeb",
    "flyio": "flyio",
    "fly": "flyio",
    "fly.io": "flyio",
}


def create_relay_client(settings: GatewaySettings, provider: str | None = None) -> RelayClient:
    """Build the configured backend. The caller enters it as an async context manager."""
    requested = (provider or settings.WHATSAPP_PROVIDER).strip().lower()
    name = PROVIDER_ALIASES.get(requested)
    common = {
        "webhook_secret": settings.WHATSAPP_WEBHOOK_SECRET,
        "timeout": settings.RELAY_REQUEST_TIMEOUT,
        "max_send_retries": settings.SEND_MAX_RETRIES,
        "send_retry_delay": settings.SEND_RETRY_DELAY,
    }

    if name == "koyeb":
        client: RelayClient = KoyebRelayClient(
            settings.KOYEB_BAILEYS_URL, api_key=settings.KOYEB_API_KEY, **common
        )
    elif name == "flyio":
        client = FlyioRelayClient(
            settings.FLYIO_BAILEYS_URL,
            api_key=settings.FLYIO_API_KEY,
            keep_alive_interval=settings.KEEP_ALIVE_INTERVAL,
            **common,
        )
    else:
        raise ConfigurationError(
            f"Unknown WhatsApp provider: {requested}",
            details={"supported": sorted(set(PROVIDER_ALIASES.values()))},
        )

    logger.info(f"Using {client.name} relay at {client.base_url}")
    return client
