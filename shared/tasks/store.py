"""SQLAlchemy-backed store for negotiation task snapshots."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from shared.database import NegotiationTaskRecord, SessionLocal
from shared.errors import PersistenceError

from .models import NegotiationTask

logger = logging.getLogger(__name__)


class TaskStore:
    """Persist and retrieve task snapshots keyed by ``(scope, task_id)``.

    Saves overwrite the whole document (last write wins). Lookups use the
    unique ``(scope, task_id)`` index, so there is no scan bound to outgrow.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def save(self, scope: str, task: NegotiationTask) -> None:
        """Write ``task`` under ``scope``; raises PersistenceError on failure."""

        await asyncio.to_thread(self._save_sync, scope, task)
        logger.debug("Task %s saved in scope %s (status=%s)", task.id, scope, task.status_label)

    async def load(self, scope: str, task_id: str) -> Optional[NegotiationTask]:
        """Return the latest snapshot, or ``None`` when the task is unknown."""

        document = await asyncio.to_thread(self._load_sync, scope, task_id)
        if document is None:
            logger.debug("Task %s not found in scope %s", task_id, scope)
            return None
        return NegotiationTask.model_validate(document)

    async def reassign_scope(self, old_scope: str, new_scope: str) -> int:
        """Move every task from ``old_scope`` to ``new_scope``.

        Returns the number of moved tasks. A task already present under the
        new scope keeps the newer snapshot.
        """

        if old_scope == new_scope:
            return 0
        moved = await asyncio.to_thread(self._reassign_sync, old_scope, new_scope)
        if moved:
            logger.info("Moved %d task(s) from scope %s to %s", moved, old_scope, new_scope)
        return moved

    def for_scope(self, scope: str) -> "ScopedTaskStore":
        return ScopedTaskStore(self, scope)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _save_sync(self, scope: str, task: NegotiationTask) -> None:
        document = task.to_document()
        db = self._session_factory()
        try:
            try:
                self._upsert(db, scope, task, document)
                db.commit()
            except IntegrityError:
                # A concurrent first save won the insert; overwrite it instead.
                db.rollback()
                self._upsert(db, scope, task, document)
                db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to save task %s in scope %s: %s", task.id, scope, exc)
            raise PersistenceError(f"Failed to save task {task.id}") from exc
        finally:
            db.close()

    @staticmethod
    def _upsert(db: Session, scope: str, task: NegotiationTask, document: dict) -> None:
        record = (
            db.query(NegotiationTaskRecord)
            .filter(
                NegotiationTaskRecord.scope == scope,
                NegotiationTaskRecord.task_id == task.id,
            )
            .one_or_none()
        )
        if record is None:
            record = NegotiationTaskRecord(scope=scope, task_id=task.id)
            db.add(record)
        record.status_label = task.status_label
        record.status = document.get("status")
        record.payload = document
        db.flush()

    def _load_sync(self, scope: str, task_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            record = (
                db.query(NegotiationTaskRecord)
                .filter(
                    NegotiationTaskRecord.scope == scope,
                    NegotiationTaskRecord.task_id == task_id,
                )
                .one_or_none()
            )
            return dict(record.payload) if record is not None else None
        except SQLAlchemyError as exc:
            logger.error("Failed to load task %s in scope %s: %s", task_id, scope, exc)
            raise PersistenceError(f"Failed to load task {task_id}") from exc
        finally:
            db.close()

    def _reassign_sync(self, old_scope: str, new_scope: str) -> int:
        db = self._session_factory()
        try:
            records = (
                db.query(NegotiationTaskRecord)
                .filter(NegotiationTaskRecord.scope == old_scope)
                .all()
            )
            moved = 0
            for record in records:
                clash = (
                    db.query(NegotiationTaskRecord)
                    .filter(
                        NegotiationTaskRecord.scope == new_scope,
                        NegotiationTaskRecord.task_id == record.task_id,
                    )
                    .one_or_none()
                )
                if clash is not None:
                    if (clash.updated_at or clash.created_at) >= (record.updated_at or record.created_at):
                        db.delete(record)
                        continue
                    db.delete(clash)
                    db.flush()
                record.scope = new_scope
                moved += 1
            db.commit()
            return moved
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to move tasks from %s to %s: %s", old_scope, new_scope, exc)
            raise PersistenceError(f"Failed to move tasks from scope {old_scope}") from exc
        finally:
            db.close()


class ScopedTaskStore:
    """Task store view bound to a single conversation scope."""

    def __init__(self, store: TaskStore, scope: str):
        self.store = store
        self.scope = scope

    async def save(self, task: NegotiationTask) -> None:
        await self.store.save(self.scope, task)

    async def load(self, task_id: str) -> Optional[NegotiationTask]:
        return await self.store.load(self.scope, task_id)
