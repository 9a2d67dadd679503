from functools import lru_cache

from relaygate.config.gateway import GatewaySettings


@lru_cache
def get_settings() -> GatewaySettings:
    """Load settings from the environment once per process."""
    return GatewaySettings()  # type: ignore[call-arg]
