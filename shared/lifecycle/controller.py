"""Provisioning, teardown and restart recovery of runtime agent instances."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from shared.config import BridgeSettings
from shared.database import AgentStatus, ProvisionedAgent, RegistryStatus, SessionLocal
from shared.errors import (
    BridgeError,
    Forbidden,
    NotFound,
    PersistenceError,
    ProvisioningError,
    TransportError,
    ValidationError,
)
from shared.identity import IdentityResolver
from shared.keyed_lock import KeyedLock
from shared.metadata import (
    AgentRegistrationPayload,
    PinataCredentialsError,
    PinataUploadError,
    PinataUploadResult,
    a2a_endpoint_for,
    build_registration_file,
    publish_agent_metadata,
)
from shared.registry import AgentRegistryRegistrationError
from shared.runtime import RuntimeClient
from shared.tasks import TaskStore

from .kinds import AgentKind, character_for, parse_kind

logger = logging.getLogger(__name__)
AUDIT_LOGGER = logging.getLogger("agent_provisioning")

Publisher = Callable[[str, Dict[str, Any]], Awaitable[PinataUploadResult]]


@dataclass
class AgentHandle:
    """Snapshot of a provisioned agent and its current binding."""

    correlation_id: str
    kind: str
    name: str
    internal_id: Optional[str] = None
    external_id: Optional[str] = None
    owner_id: Optional[str] = None
    description: Optional[str] = None
    registry_status: str = RegistryStatus.UNREGISTERED.value
    token_uri: Optional[str] = None

    @property
    def binding_key(self) -> str:
        return self.external_id or self.correlation_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "externalId": self.external_id,
            "internalId": self.internal_id,
            "name": self.name,
            "kind": self.kind,
            "ownerId": self.owner_id,
            "registryStatus": self.registry_status,
            "tokenUri": self.token_uri,
        }


@dataclass
class RestoreReport:
    """Outcome of one restore pass, by binding key."""

    kept: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class AgentLifecycleController:
    """Create, delete and restore runtime instances for marketplace agents.

    In static mode a fixed set of instances, one per configured kind, is
    started at boot and create/delete are refused. In dynamic mode instances
    are created per caller request and recorded in ``provisioned_agents`` so
    they can be restored after a runtime restart.
    """

    def __init__(
        self,
        runtime: RuntimeClient,
        resolver: IdentityResolver,
        task_store: TaskStore,
        *,
        settings: Optional[BridgeSettings] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        registry: Any = None,
        publisher: Publisher = publish_agent_metadata,
    ):
        self.runtime = runtime
        self.resolver = resolver
        self.task_store = task_store
        self.settings = settings or BridgeSettings()
        self.registry = registry
        self._session_factory = session_factory
        self._publish = publisher
        self._locks = KeyedLock()
        self._restore_task: Optional[asyncio.Task] = None
        # internal id -> correlation id while a create is still binding it
        self._starting: Dict[str, str] = {}

    @property
    def dynamic(self) -> bool:
        return self.settings.dynamic

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def boot(self) -> RestoreReport:
        """Start (or re-attach) the fixed instances of static mode."""

        if self.dynamic:
            raise ValidationError("boot() is only used in static provisioning mode")
        kinds = [parse_kind(kind) for kind in self.settings.static_kinds]
        await asyncio.to_thread(self._ensure_static_records, kinds)
        return await self.restore_all()

    async def create_agent(
        self,
        kind: Any,
        owner_id: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> AgentHandle:
        """Start a new runtime instance of ``kind`` and bind it.

        The binding key is a fresh correlation id until on-chain registration
        supplies the external id.
        """

        self._require_dynamic("create")
        agent_kind = parse_kind(kind)
        correlation_id = uuid4().hex
        config = character_for(agent_kind, name)
        handle = AgentHandle(
            correlation_id=correlation_id,
            kind=agent_kind.value,
            name=config["name"],
            owner_id=owner_id,
            description=description,
        )

        async with self._locks.hold(correlation_id):
            internal_id = await self.runtime.start(config)
            self._starting[internal_id] = correlation_id
            try:
                await asyncio.to_thread(self._insert_record, handle)
                await self.resolver.bind(correlation_id, internal_id)
            except BridgeError:
                await self._stop_orphan(internal_id)
                await self._discard_record(correlation_id)
                raise
            finally:
                self._starting.pop(internal_id, None)
            handle.internal_id = internal_id

        AUDIT_LOGGER.info(
            "Agent created",
            extra={
                "correlation_id": correlation_id,
                "internal_id": internal_id,
                "kind": agent_kind.value,
                "owner_id": owner_id,
            },
        )
        return handle

    async def delete_agent(self, internal_id: str, *, owner_id: Optional[str] = None) -> None:
        """Stop ``internal_id``, drop its binding and mark its record deleted.

        With ``owner_id`` only that owner's agents may be deleted; anything
        else raises Forbidden, and unbound instances are reported NotFound
        without being touched. Raises NotFound when neither a binding nor a
        runtime instance exists for ``internal_id``.
        """

        self._require_dynamic("delete")
        correlation_id = self._starting.get(internal_id)
        if correlation_id is None:
            try:
                binding_key = self.resolver.reverse(internal_id)
            except NotFound:
                if owner_id is not None:
                    raise
                # Unbound instance: let the runtime decide whether it exists
                await self.runtime.stop(internal_id)
                logger.info("Stopped unbound runtime instance %s", internal_id)
                return
            record = await asyncio.to_thread(self._find_record, binding_key)
            correlation_id = record.correlation_id if record else binding_key

        async with self._locks.hold(correlation_id):
            # Re-read under the lock: a registration may have re-keyed the binding
            try:
                binding_key = self.resolver.reverse(internal_id)
            except NotFound:
                binding_key = None
            record = await asyncio.to_thread(self._find_record, binding_key or correlation_id)
            if owner_id is not None:
                if record is None or binding_key is None:
                    raise NotFound(f"Runtime instance {internal_id} is not bound to an agent")
                if record.owner_id != owner_id:
                    raise Forbidden(f"Agent {record.correlation_id} belongs to another owner")

            try:
                await self.runtime.stop(internal_id)
            except NotFound:
                if binding_key is None:
                    raise
                logger.info("Runtime instance %s already gone; clearing binding", internal_id)
            if binding_key is not None:
                await self.resolver.unbind(binding_key)
            if record is not None:
                await asyncio.to_thread(self._mark_deleted, record.correlation_id)

        AUDIT_LOGGER.info(
            "Agent deleted",
            extra={"binding_key": binding_key, "internal_id": internal_id, "owner_id": owner_id},
        )

    async def lookup(self, agent_ref: str) -> AgentHandle:
        """Find an active agent by correlation id or external id."""

        record = await asyncio.to_thread(self._find_record, agent_ref)
        if record is None:
            raise NotFound(f"Agent {agent_ref} not found")
        try:
            record.internal_id = self.resolver.resolve(record.binding_key)
        except NotFound:
            record.internal_id = None
        return record

    async def attach_external_id(
        self,
        correlation_id: str,
        external_id: str,
        token_uri: Optional[str] = None,
        tx_ref: Optional[str] = None,
    ) -> AgentHandle:
        """Re-key an agent from its correlation id to its on-chain identity.

        Tasks saved under the correlation scope move to the external scope.
        Repeating the call with the same external id is a no-op.
        """

        external_id = str(external_id).strip()
        if not external_id:
            raise ValidationError("external_id must be a non-empty identifier")

        async with self._locks.hold(correlation_id):
            record = await asyncio.to_thread(self._get_record, correlation_id)
            if record.external_id == external_id:
                return await self.lookup(correlation_id)
            if record.external_id:
                raise ValidationError(
                    f"Agent {correlation_id} is already registered as {record.external_id}"
                )

            await asyncio.to_thread(self._store_registration, correlation_id, external_id, token_uri, tx_ref)
            try:
                internal_id = self.resolver.resolve(correlation_id)
            except NotFound:
                internal_id = None
            if internal_id is not None:
                # Binding the same internal id evicts the correlation binding
                await self.resolver.bind(external_id, internal_id)
            moved = await self.task_store.reassign_scope(correlation_id, external_id)

        logger.info(
            "Agent %s registered as %s (%d task(s) moved)",
            correlation_id,
            external_id,
            moved,
        )
        AUDIT_LOGGER.info(
            "Agent registered",
            extra={"correlation_id": correlation_id, "external_id": external_id, "tx_ref": tx_ref},
        )
        return await self.lookup(correlation_id)

    async def register_on_chain(self, correlation_id: str) -> AgentHandle:
        """Mint an ERC-8004 identity for the agent and attach it."""

        if self.registry is None:
            raise ProvisioningError("Identity registry is not configured")

        record = await asyncio.to_thread(self._get_record, correlation_id)
        if record.external_id:
            return await self.lookup(correlation_id)

        await asyncio.to_thread(self._set_registry_status, correlation_id, RegistryStatus.PENDING, None)
        external_id: Optional[str] = None
        try:
            receipt = await asyncio.to_thread(self.registry.register, "")
            external_id = receipt.external_id
            document = build_registration_file(
                AgentRegistrationPayload(
                    external_id=external_id,
                    name=record.name,
                    description=record.description or "",
                    kind=record.kind,
                    a2a_endpoint=a2a_endpoint_for(
                        self.settings.public_url, external_id, self.settings.protocol_segment
                    ),
                    registry_ref=self.registry.registry_ref,
                    owner_id=record.owner_id,
                )
            )
            upload = await self._publish(external_id, document)
            await asyncio.to_thread(self.registry.set_token_uri, external_id, upload.ipfs_uri)
        except (AgentRegistryRegistrationError, PinataCredentialsError, PinataUploadError) as exc:
            message = str(exc) if external_id is None else f"minted {external_id}: {exc}"
            await asyncio.to_thread(self._set_registry_status, correlation_id, RegistryStatus.FAILED, message)
            logger.error("On-chain registration of %s failed: %s", correlation_id, message)
            raise ProvisioningError(f"On-chain registration failed for agent {correlation_id}") from exc

        return await self.attach_external_id(
            correlation_id,
            external_id,
            token_uri=upload.ipfs_uri,
            tx_ref=receipt.tx_ref,
        )

    async def wait_until_ready(self) -> None:
        """Poll the runtime health check until it answers or the deadline passes."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.ready_timeout
        attempts = 0
        while True:
            attempts += 1
            if await self.runtime.ping():
                logger.info("Runtime ready after %d health check(s)", attempts)
                return
            if loop.time() >= deadline:
                raise TransportError(
                    f"Runtime not ready after {self.settings.ready_timeout}s",
                    timed_out=True,
                )
            await asyncio.sleep(self.settings.ready_poll_interval)

    async def restore_all(self) -> RestoreReport:
        """Re-establish a live instance and binding for every active agent.

        Concurrent calls share one pass. Safe to repeat: agents whose bound
        instance is still alive are left untouched.
        """

        if self._restore_task is None or self._restore_task.done():
            self._restore_task = asyncio.create_task(self._restore())
        return await asyncio.shield(self._restore_task)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_dynamic(self, action: str) -> None:
        if not self.dynamic:
            raise ValidationError(f"Agent {action} is disabled in static provisioning mode")

    async def _restore(self) -> RestoreReport:
        await self.wait_until_ready()
        records = await asyncio.to_thread(self._active_records)
        report = RestoreReport()
        for record in records:
            try:
                await self._restore_one(record, report)
            except BridgeError as exc:
                logger.error("Failed to restore agent %s: %s", record.binding_key, exc)
                report.failed.append(record.binding_key)

        logger.info(
            "Restore finished: %d kept, %d started, %d failed",
            len(report.kept),
            len(report.started),
            len(report.failed),
        )
        return report

    async def _restore_one(self, record: AgentHandle, report: RestoreReport) -> None:
        key = record.binding_key
        async with self._locks.hold(record.correlation_id):
            try:
                internal_id: Optional[str] = self.resolver.resolve(key)
            except NotFound:
                internal_id = None

            if internal_id is not None and await self.runtime.exists(internal_id):
                report.kept.append(key)
                return

            config = character_for(parse_kind(record.kind), record.name)
            new_internal = await self.runtime.start(config)
            try:
                await self.resolver.bind(key, new_internal)
            except BridgeError:
                await self._stop_orphan(new_internal)
                raise
            report.started.append(key)
            logger.info("Restored agent %s on %s (was %s)", key, new_internal, internal_id)

    async def _stop_orphan(self, internal_id: str) -> None:
        try:
            await self.runtime.stop(internal_id)
        except BridgeError as exc:
            logger.error("Could not stop orphaned instance %s: %s", internal_id, exc)

    async def _discard_record(self, correlation_id: str) -> None:
        try:
            await asyncio.to_thread(self._mark_deleted, correlation_id)
        except NotFound:
            # The insert itself failed
            return
        except BridgeError as exc:
            logger.error("Could not discard record of failed agent %s: %s", correlation_id, exc)

    def _ensure_static_records(self, kinds: List[AgentKind]) -> None:
        db = self._session_factory()
        try:
            for kind in kinds:
                if db.get(ProvisionedAgent, kind.value) is None:
                    config = character_for(kind)
                    db.add(ProvisionedAgent(id=kind.value, kind=kind.value, name=config["name"]))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to record static agents") from exc
        finally:
            db.close()

    def _insert_record(self, handle: AgentHandle) -> None:
        db = self._session_factory()
        try:
            db.add(
                ProvisionedAgent(
                    id=handle.correlation_id,
                    kind=handle.kind,
                    name=handle.name,
                    description=handle.description,
                    owner_id=handle.owner_id,
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to persist agent %s: %s", handle.correlation_id, exc)
            raise PersistenceError(f"Failed to persist agent {handle.correlation_id}") from exc
        finally:
            db.close()

    def _find_record(self, agent_ref: str) -> Optional[AgentHandle]:
        db = self._session_factory()
        try:
            row = (
                db.query(ProvisionedAgent)
                .filter(
                    or_(ProvisionedAgent.id == agent_ref, ProvisionedAgent.external_id == agent_ref),
                    ProvisionedAgent.status == AgentStatus.ACTIVE.value,
                )
                .first()
            )
            return _handle(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to look up agent {agent_ref}") from exc
        finally:
            db.close()

    def _get_record(self, correlation_id: str) -> AgentHandle:
        db = self._session_factory()
        try:
            row = db.get(ProvisionedAgent, correlation_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to look up agent {correlation_id}") from exc
        finally:
            db.close()
        if row is None or row.status != AgentStatus.ACTIVE.value:
            raise NotFound(f"Agent {correlation_id} not found")
        return _handle(row)

    def _active_records(self) -> List[AgentHandle]:
        db = self._session_factory()
        try:
            rows = (
                db.query(ProvisionedAgent)
                .filter(ProvisionedAgent.status == AgentStatus.ACTIVE.value)
                .order_by(ProvisionedAgent.created_at)
                .all()
            )
            return [_handle(row) for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load provisioned agents") from exc
        finally:
            db.close()

    def _mark_deleted(self, correlation_id: str) -> None:
        self._update_record(correlation_id, status=AgentStatus.DELETED.value)

    def _set_registry_status(self, correlation_id: str, status: RegistryStatus, error: Optional[str]) -> None:
        self._update_record(correlation_id, registry_status=status.value, registry_error=error)

    def _store_registration(
        self,
        correlation_id: str,
        external_id: str,
        token_uri: Optional[str],
        tx_ref: Optional[str],
    ) -> None:
        try:
            self._update_record(
                correlation_id,
                external_id=external_id,
                token_uri=token_uri,
                registry_tx=tx_ref,
                registry_status=RegistryStatus.REGISTERED.value,
                registry_error=None,
            )
        except PersistenceError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ValidationError(f"External id {external_id} is already attached to another agent") from exc
            raise

    def _update_record(self, correlation_id: str, **values: Any) -> None:
        db = self._session_factory()
        try:
            row = db.get(ProvisionedAgent, correlation_id)
            if row is None:
                raise NotFound(f"Agent {correlation_id} not found")
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = datetime.utcnow()
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to update agent %s: %s", correlation_id, exc)
            raise PersistenceError(f"Failed to update agent {correlation_id}") from exc
        finally:
            db.close()


def _handle(row: ProvisionedAgent) -> AgentHandle:
    return AgentHandle(
        correlation_id=row.id,
        kind=row.kind,
        name=row.name,
        external_id=row.external_id,
        owner_id=row.owner_id,
        description=row.description,
        registry_status=row.registry_status or RegistryStatus.UNREGISTERED.value,
        token_uri=row.token_uri,
    )
