"""Who may observe which channel."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from shared.database import AgentStatus, ChannelGrant, ProvisionedAgent, SessionLocal, session_scope
from shared.errors import Forbidden, PersistenceError

from .channels import ChannelKey, ChannelKind

logger = logging.getLogger(__name__)


class ChannelAuthorizer:
    """Agent channels belong to the agent's owner; buy-request and
    negotiation channels are open to principals holding a grant."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def authorize(self, principal: str, channel: ChannelKey) -> None:
        allowed = await asyncio.to_thread(self._allowed, principal, channel)
        if not allowed:
            logger.info("Denied %s access to %s", principal, channel)
            raise Forbidden(f"{principal} may not observe {channel}")

    async def grant(self, channel: ChannelKey, principal: str) -> bool:
        """Allow ``principal`` to observe ``channel``; False if already granted."""

        created = await asyncio.to_thread(self._grant_sync, channel, principal)
        if created:
            logger.info("Granted %s access to %s", principal, channel)
        return created

    def _allowed(self, principal: str, channel: ChannelKey) -> bool:
        try:
            with session_scope(self._session_factory) as db:
                return self._query_access(db, principal, channel).first() is not None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to check access to {channel}") from exc

    @staticmethod
    def _query_access(db: Session, principal: str, channel: ChannelKey):
        if channel.kind is ChannelKind.AGENT:
            return db.query(ProvisionedAgent.id).filter(
                or_(ProvisionedAgent.id == channel.id, ProvisionedAgent.external_id == channel.id),
                ProvisionedAgent.status == AgentStatus.ACTIVE.value,
                ProvisionedAgent.owner_id == principal,
            )
        return db.query(ChannelGrant.id).filter(
            ChannelGrant.channel_key == str(channel),
            ChannelGrant.principal == principal,
        )

    def _grant_sync(self, channel: ChannelKey, principal: str) -> bool:
        db = self._session_factory()
        try:
            db.add(ChannelGrant(channel_key=str(channel), principal=principal))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(f"Failed to grant access to {channel}") from exc
        finally:
            db.close()
