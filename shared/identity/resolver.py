"""Durable bidirectional mapping between external and internal agent ids."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.database import AgentBinding, SessionLocal, session_scope
from shared.errors import NotFound, PersistenceError, ValidationError
from shared.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Map on-chain (external) agent identities to runtime (internal) ones.

    Writes go to the ``agent_bindings`` table first and become visible in
    memory only once committed. Mutations on the same external id serialize
    through a per-key lock; ``resolve`` and ``reverse`` read the in-memory
    maps without locking and therefore never block.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory
        self._forward: Dict[str, str] = {}
        self._reverse: Dict[str, str] = {}
        self._locks = KeyedLock()

    async def load(self) -> int:
        """Repopulate the in-memory maps from persisted bindings."""

        rows = await asyncio.to_thread(self._load_sync)
        self._forward = {external: internal for external, internal in rows}
        self._reverse = {internal: external for external, internal in rows}
        logger.info("Loaded %d agent binding(s)", len(rows))
        return len(rows)

    async def bind(self, external_id: str, internal_id: str) -> Optional[str]:
        """Bind ``external_id`` to ``internal_id``; last call wins.

        Any other binding holding ``internal_id`` is stale and is evicted.
        Returns the evicted external id, if there was one.
        """

        external_id = _normalize(external_id, "external_id")
        internal_id = _normalize(internal_id, "internal_id")

        while True:
            holder = self._reverse.get(internal_id)
            async with self._locks.hold_many(external_id, *([holder] if holder else [])):
                if self._reverse.get(internal_id) != holder:
                    # Another bind claimed internal_id while we waited
                    continue
                if self._forward.get(external_id) == internal_id:
                    return None
                evicted = await asyncio.to_thread(self._bind_sync, external_id, internal_id)
                self._apply_bind(external_id, internal_id)
            break

        if evicted:
            logger.warning(
                "Internal id %s moved from %s to %s; stale binding evicted",
                internal_id,
                evicted,
                external_id,
            )
        logger.info("Bound agent %s -> %s", external_id, internal_id)
        return evicted

    async def unbind(self, external_id: str) -> bool:
        """Remove the binding; returns False when there was none."""

        external_id = _normalize(external_id, "external_id")
        async with self._locks.hold(external_id):
            removed = await asyncio.to_thread(self._unbind_sync, external_id)
            internal_id = self._forward.pop(external_id, None)
            if internal_id is not None and self._reverse.get(internal_id) == external_id:
                del self._reverse[internal_id]

        if removed or internal_id is not None:
            logger.info("Unbound agent %s (was %s)", external_id, internal_id)
            return True
        return False

    def resolve(self, external_id: str) -> str:
        """Return the live internal id for ``external_id`` or raise NotFound."""

        internal_id = self._forward.get(str(external_id))
        if internal_id is None:
            raise NotFound(f"Agent {external_id} is not bound to a runtime instance")
        return internal_id

    def reverse(self, internal_id: str) -> str:
        """Return the external id currently bound to ``internal_id``."""

        external_id = self._reverse.get(str(internal_id))
        if external_id is None:
            raise NotFound(f"Runtime instance {internal_id} is not bound to an agent")
        return external_id

    def bindings(self) -> Dict[str, str]:
        """Snapshot of live bindings, external -> internal."""

        return dict(self._forward)

    def __len__(self) -> int:
        return len(self._forward)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _apply_bind(self, external_id: str, internal_id: str) -> None:
        previous_internal = self._forward.get(external_id)
        if previous_internal is not None and self._reverse.get(previous_internal) == external_id:
            del self._reverse[previous_internal]

        stale_external = self._reverse.get(internal_id)
        if stale_external is not None and stale_external != external_id:
            self._forward.pop(stale_external, None)

        self._forward[external_id] = internal_id
        self._reverse[internal_id] = external_id

    def _load_sync(self):
        try:
            with session_scope(self._session_factory) as db:
                return [(row.external_id, row.internal_id) for row in db.query(AgentBinding).all()]
        except SQLAlchemyError as exc:
            logger.error("Failed to load agent bindings: %s", exc)
            raise PersistenceError("Failed to load agent bindings") from exc

    def _bind_sync(self, external_id: str, internal_id: str) -> Optional[str]:
        db = self._session_factory()
        try:
            stale = (
                db.query(AgentBinding)
                .filter(
                    AgentBinding.internal_id == internal_id,
                    AgentBinding.external_id != external_id,
                )
                .one_or_none()
            )
            evicted = stale.external_id if stale is not None else None
            if stale is not None:
                db.query(AgentBinding).filter(
                    AgentBinding.external_id == stale.external_id
                ).delete(synchronize_session=False)

            binding = db.get(AgentBinding, external_id)
            if binding is None:
                db.add(AgentBinding(external_id=external_id, internal_id=internal_id))
            else:
                binding.internal_id = internal_id
                binding.updated_at = datetime.utcnow()
            db.commit()
            return evicted
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to persist binding %s -> %s: %s", external_id, internal_id, exc)
            raise PersistenceError(f"Failed to bind agent {external_id}") from exc
        finally:
            db.close()

    def _unbind_sync(self, external_id: str) -> bool:
        db = self._session_factory()
        try:
            deleted = (
                db.query(AgentBinding)
                .filter(AgentBinding.external_id == external_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return bool(deleted)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to remove binding for %s: %s", external_id, exc)
            raise PersistenceError(f"Failed to unbind agent {external_id}") from exc
        finally:
            db.close()


def _normalize(value: object, name: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{name} must be a non-empty identifier")
    return text
