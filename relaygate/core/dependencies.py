"""Object graph of the gateway, built once per process."""
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass

from relaygate.adapters.completion import CompletionClient
from relaygate.adapters.relay import RelayClient, create_relay_client
from relaygate.config.gateway import GatewaySettings
from relaygate.core.database import DatabaseManager
from relaygate.services.connection_monitor import ConnectionMonitor
from relaygate.services.conversation_service import ConversationService
from relaygate.services.session_manager import SessionManager
from relaygate.services.session_store import SessionStore
from relaygate.services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)


@dataclass
class Gateway:
    """Every long-lived collaborator, wired together."""

    settings: GatewaySettings
    database: DatabaseManager
    relay: RelayClient
    completion: CompletionClient
    store: SessionStore
    session_manager: SessionManager
    conversations: ConversationService
    webhook_handler: WebhookHandler
    monitor: ConnectionMonitor


def build_completion_client(settings: GatewaySettings) -> CompletionClient:
    return CompletionClient(
        settings.COMPLETION_API_URL,
        api_key=settings.COMPLETION_API_KEY,
        timeout=settings.COMPLETION_TIMEOUT,
        model=settings.WHATSAPP_DEFAULT_MODEL,
        web_search=settings.WHATSAPP_ENABLE_WEB_SEARCH,
        mcp_enabled=settings.WHATSAPP_ENABLE_MCP,
        max_output_tokens=settings.WHATSAPP_MAX_OUTPUT_TOKENS,
    )


async def build_gateway(
    settings: GatewaySettings,
    stack: AsyncExitStack,
    *,
    database: DatabaseManager | None = None,
    relay: RelayClient | None = None,
    completion: CompletionClient | None = None,
) -> Gateway:
    """
    Build and enter every collaborator on the given exit stack.

    Closing the stack stops the monitor, cancels reconnection and keep-alive
    timers, closes the HTTP clients and disposes the engine, in that order.
    """
    database = database or DatabaseManager(settings)
    stack.push_async_callback(database.close)
    await database.create_tables()

    relay = await stack.enter_async_context(relay or create_relay_client(settings))
    completion = await stack.enter_async_context(completion or build_completion_client(settings))

    session_maker = database.async_session_maker
    store = SessionStore(session_maker)
    conversations = ConversationService(session_maker)
    session_manager = SessionManager(store, relay, settings)
    stack.push_async_callback(session_manager.shutdown)

    webhook_handler = WebhookHandler(session_manager, conversations, relay, completion)
    monitor = ConnectionMonitor(session_manager, store, conversations, relay, settings)
    stack.push_async_callback(monitor.stop)

    logger.info(f"Gateway ready with {relay.name} relay")
    return Gateway(
        settings=settings,
        database=database,
        relay=relay,
        completion=completion,
        store=store,
        session_manager=session_manager,
        conversations=conversations,
        webhook_handler=webhook_handler,
        monitor=monitor,
    )
