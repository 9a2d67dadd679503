"""Persistence for session records."""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaygate.models.session import PENDING_PHONE_PREFIX, SessionStatus, WhatsAppSession

logger = logging.getLogger(__name__)


class SessionStore:
    """Keyed session records with user and status filters.

    Every call runs in its own short transaction so background tasks can use
    the store without a request-scoped session.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def create(self, **fields: Any) -> WhatsAppSession:
        async with self._session_maker() as db:
            record = WhatsAppSession(**fields)
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return record

    async def get(self, external_session_id: str) -> WhatsAppSession | None:
        async with self._session_maker() as db:
            result = await db.execute(
                select(WhatsAppSession).where(
                    WhatsAppSession.external_session_id == external_session_id
                )
            )
            return result.scalar_one_or_none()

    async def find(
        self,
        user_id: str | None = None,
        statuses: Iterable[SessionStatus] | None = None,
    ) -> list[WhatsAppSession]:
        query = select(WhatsAppSession).order_by(WhatsAppSession.created_at.desc())
        if user_id is not None:
            query = query.where(WhatsAppSession.user_id == user_id)
        if statuses is not None:
            query = query.where(WhatsAppSession.status.in_(list(statuses)))
        async with self._session_maker() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def count(self, user_id: str, statuses: Iterable[SessionStatus]) -> int:
        async with self._session_maker() as db:
            result = await db.execute(
                select(func.count(WhatsAppSession.id)).where(
                    WhatsAppSession.user_id == user_id,
                    WhatsAppSession.status.in_(list(statuses)),
                )
            )
            return int(result.scalar_one())

    async def update(self, external_session_id: str, **fields: Any) -> WhatsAppSession | None:
        async with self._session_maker() as db:
            result = await db.execute(
                select(WhatsAppSession).where(
                    WhatsAppSession.external_session_id == external_session_id
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None
            for name, value in fields.items():
                setattr(record, name, value)
            await db.commit()
            await db.refresh(record)
            return record

    async def delete(self, external_session_id: str) -> int:
        return await self._delete_where(
            WhatsAppSession.external_session_id == external_session_id
        )

    async def delete_unconfirmed(self, user_id: str) -> int:
        """Drop the user's sessions that never got a phone number."""
        return await self._delete_where(
            WhatsAppSession.user_id == user_id,
            (WhatsAppSession.phone_number == "")
            | WhatsAppSession.phone_number.startswith(PENDING_PHONE_PREFIX),
        )

    async def delete_duplicates(
        self, user_id: str, phone_number: str, keep_external_id: str
    ) -> int:
        """Drop other sessions of the same user that use the same phone number."""
        return await self._delete_where(
            WhatsAppSession.user_id == user_id,
            WhatsAppSession.phone_number == phone_number,
            WhatsAppSession.external_session_id != keep_external_id,
        )

    async def list_stale(
        self, statuses: Iterable[SessionStatus], updated_before: datetime
    ) -> list[WhatsAppSession]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(WhatsAppSession).where(
                    WhatsAppSession.status.in_(list(statuses)),
                    WhatsAppSession.updated_at < updated_before,
                )
            )
            return list(result.scalars().all())

    async def list_expired_qr(self, now: datetime) -> list[WhatsAppSession]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(WhatsAppSession).where(
                    WhatsAppSession.status == SessionStatus.QR_PENDING,
                    WhatsAppSession.qr_expires_at.is_not(None),
                    WhatsAppSession.qr_expires_at < now,
                )
            )
            return list(result.scalars().all())

    async def _delete_where(self, *conditions: Any) -> int:
        async with self._session_maker() as db:
            result = await db.execute(delete(WhatsAppSession).where(*conditions))
            await db.commit()
            return result.rowcount or 0
