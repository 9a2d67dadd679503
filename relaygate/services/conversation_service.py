"""Conversations, their chat threads and tracked channel messages."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaygate.models import (
    DEFAULT_CHAT_TITLE,
    Chat,
    Conversation,
    DeliveryStatus,
    MessageDirection,
    TrackedMessage,
)
from relaygate.schemas.message import CanonicalMessage

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 60


def title_from_text(text: str) -> str:
    """First line of a message, shortened to fit a chat title."""
    first_line = text.strip().split("\n", 1)[0].strip()
    if len(first_line) <= TITLE_MAX_LENGTH:
        return first_line
    return first_line[: TITLE_MAX_LENGTH - 3].rstrip() + "..."


class ConversationService:
    """Service for the contact-to-chat mapping and message tracking."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def find_or_create(
        self,
        user_id: str,
        external_contact_id: str,
        phone_number: str,
        contact_name: str | None = None,
        session_id: str | None = None,
    ) -> Conversation:
        """Conversation for (user, contact), created together with a fresh chat."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(Conversation).where(
                    Conversation.user_id == user_id,
                    Conversation.external_contact_id == external_contact_id,
                )
            )
            conversation = result.scalar_one_or_none()
            if conversation is not None:
                changed = False
                if contact_name and conversation.contact_name != contact_name:
                    conversation.contact_name = contact_name
                    changed = True
                # follow the contact onto the session it is talking through now
                if session_id and conversation.session_id != session_id:
                    logger.info(
                        f"Moving conversation {conversation.id} from session "
                        f"{conversation.session_id} to {session_id}"
                    )
                    conversation.session_id = session_id
                    changed = True
                if changed:
                    await db.commit()
                    await db.refresh(conversation)
                return conversation

            chat = Chat(user_id=user_id, title=DEFAULT_CHAT_TITLE, messages=[])
            db.add(chat)
            await db.flush()
            conversation = Conversation(
                user_id=user_id,
                chat_id=chat.id,
                external_contact_id=external_contact_id,
                phone_number=phone_number,
                contact_name=contact_name,
                session_id=session_id,
            )
            db.add(conversation)
            await db.commit()
            await db.refresh(conversation)
            logger.info(
                f"Created conversation {conversation.id} for {external_contact_id} (chat {chat.id})"
            )
            return conversation

    async def get_chat(self, chat_id: str) -> Chat | None:
        async with self._session_maker() as db:
            return await db.get(Chat, chat_id)

    async def append_chat_messages(self, chat_id: str, *messages: CanonicalMessage) -> Chat | None:
        async with self._session_maker() as db:
            chat = await db.get(Chat, chat_id)
            if chat is None:
                logger.warning(f"Chat {chat_id} not found, dropping {len(messages)} messages")
                return None
            # JSON columns only notice reassignment
            chat.messages = list(chat.messages or []) + [
                m.model_dump(mode="json", by_alias=True, exclude_none=True) for m in messages
            ]
            await db.commit()
            await db.refresh(chat)
            return chat

    async def reset_chat_history(self, chat_id: str) -> int:
        """Clear a chat's messages. Returns how many were removed."""
        async with self._session_maker() as db:
            chat = await db.get(Chat, chat_id)
            if chat is None:
                return 0
            removed = len(chat.messages or [])
            chat.messages = []
            chat.title = DEFAULT_CHAT_TITLE
            await db.commit()
            logger.info(f"Reset chat {chat_id}, removed {removed} messages")
            return removed

    async def update_title_if_default(self, chat_id: str, text: str) -> bool:
        title = title_from_text(text)
        if not title:
            return False
        async with self._session_maker() as db:
            chat = await db.get(Chat, chat_id)
            if chat is None or chat.title != DEFAULT_CHAT_TITLE:
                return False
            chat.title = title
            await db.commit()
            return True

    async def get(self, conversation_id: int) -> Conversation | None:
        async with self._session_maker() as db:
            return await db.get(Conversation, conversation_id)

    async def list_by_user(self, user_id: str) -> list[Conversation]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(Conversation)
                .where(Conversation.user_id == user_id)
                .order_by(Conversation.updated_at.desc())
            )
            return list(result.scalars().all())

    async def delete(self, conversation_id: int) -> bool:
        async with self._session_maker() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                return False
            await db.delete(conversation)
            await db.commit()
            return True

    async def delete_orphaned(self) -> int:
        """
        Drop conversations that were never bound to a session.

        A conversation whose session row was deleted is kept: the contact
        still owns that chat thread and the next message rebinds it.
        """
        async with self._session_maker() as db:
            result = await db.execute(
                select(Conversation).where(Conversation.session_id.is_(None))
            )
            orphans = list(result.scalars().all())
            for conversation in orphans:
                await db.delete(conversation)
            await db.commit()
        if orphans:
            logger.info(f"Deleted {len(orphans)} orphaned conversations")
        return len(orphans)

    async def track_message(
        self,
        conversation_id: int,
        external_message_id: str,
        direction: MessageDirection,
        status: DeliveryStatus | None = None,
        error_message: str | None = None,
    ) -> TrackedMessage:
        async with self._session_maker() as db:
            tracked = TrackedMessage(
                conversation_id=conversation_id,
                external_message_id=external_message_id,
                direction=direction,
                status=status,
                error_message=error_message,
            )
            db.add(tracked)
            await db.commit()
            await db.refresh(tracked)
            return tracked

    async def update_message_status(
        self,
        external_message_id: str,
        status: DeliveryStatus,
        error_message: str | None = None,
    ) -> TrackedMessage | None:
        async with self._session_maker() as db:
            result = await db.execute(
                select(TrackedMessage)
                .where(TrackedMessage.external_message_id == external_message_id)
                .order_by(TrackedMessage.id.desc())
                .limit(1)
            )
            tracked = result.scalar_one_or_none()
            if tracked is None:
                return None
            tracked.status = status
            if error_message is not None:
                tracked.error_message = error_message
            await db.commit()
            await db.refresh(tracked)
            return tracked
