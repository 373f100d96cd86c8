"""Channel membership and event fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set

from shared.errors import ValidationError

from .authorization import ChannelAuthorizer
from .channels import ChannelEvent, ChannelKey
from .observers import Observer

logger = logging.getLogger(__name__)


class EventRouter:
    """Route channel events to subscribed observers.

    Membership is kept in two maps (channel -> observers, observer ->
    channels) that are always updated together. Publishing delivers to a
    snapshot of the members concurrently; one slow or failing observer
    never holds up or breaks delivery to the others.
    """

    def __init__(self, authorizer: Optional[ChannelAuthorizer] = None, *, delivery_timeout: float = 5.0):
        self.authorizer = authorizer
        self.delivery_timeout = delivery_timeout
        self._members: Dict[ChannelKey, Dict[str, Observer]] = {}
        self._channels: Dict[str, Set[ChannelKey]] = {}
        self._inflight: Dict[str, Set[asyncio.Task]] = {}

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    async def subscribe(self, observer: Observer, channel: ChannelKey) -> None:
        """Add ``observer`` to ``channel``; raises Forbidden when not allowed."""

        self._require_open(observer)
        if self.authorizer is not None:
            await self.authorizer.authorize(observer.principal, channel)
        # The observer may have gone away while authorization ran
        self._require_open(observer)

        self._members.setdefault(channel, {})[observer.id] = observer
        self._channels.setdefault(observer.id, set()).add(channel)
        logger.info("Observer %s (%s) joined %s", observer.id, observer.principal, channel)

    def unsubscribe(self, observer: Observer, channel: ChannelKey) -> bool:
        channels = self._channels.get(observer.id)
        if not channels or channel not in channels:
            return False
        channels.discard(channel)
        if not channels:
            del self._channels[observer.id]
        self._drop_member(channel, observer.id)
        logger.info("Observer %s left %s", observer.id, channel)
        return True

    def members(self, channel: ChannelKey) -> List[str]:
        return sorted(self._members.get(channel, {}))

    def channels_of(self, observer: Observer) -> List[ChannelKey]:
        return sorted(self._channels.get(observer.id, set()), key=str)

    def is_member(self, observer: Observer, channel: ChannelKey) -> bool:
        return channel in self._channels.get(observer.id, set())

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def publish(self, channel: ChannelKey, event: ChannelEvent) -> int:
        """Deliver ``event`` to the current members of ``channel``.

        Returns the number of observers that received it.
        """

        members = list(self._members.get(channel, {}).values())
        if not members:
            logger.debug("No observers on %s for %s", channel, event.name)
            return 0

        tasks = [self._spawn(observer, channel, event) for observer in members]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        delivered = sum(1 for result in results if result is True)
        logger.debug("Published %s on %s to %d/%d observer(s)", event.name, channel, delivered, len(members))
        return delivered

    async def on_disconnect(self, observer: Observer) -> bool:
        """Drop every membership of ``observer``; runs once per observer.

        Returns after in-flight deliveries to the observer have finished, so
        nothing is delivered to it afterwards.
        """

        if observer.closed:
            return False
        observer.closed = True

        channels = self._channels.pop(observer.id, set())
        for channel in channels:
            self._drop_member(channel, observer.id)

        pending = self._inflight.pop(observer.id, set())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Observer %s disconnected; left %d channel(s)", observer.id, len(channels))
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _require_open(observer: Observer) -> None:
        if observer.closed:
            raise ValidationError(f"Observer {observer.id} is disconnected")

    def _drop_member(self, channel: ChannelKey, observer_id: str) -> None:
        members = self._members.get(channel)
        if members is None:
            return
        members.pop(observer_id, None)
        if not members:
            del self._members[channel]

    def _spawn(self, observer: Observer, channel: ChannelKey, event: ChannelEvent) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(observer, channel, event))
        pending = self._inflight.setdefault(observer.id, set())
        pending.add(task)

        def _done(finished: asyncio.Task) -> None:
            tasks = self._inflight.get(observer.id)
            if tasks is not None:
                tasks.discard(finished)
                if not tasks:
                    del self._inflight[observer.id]

        task.add_done_callback(_done)
        return task

    async def _deliver(self, observer: Observer, channel: ChannelKey, event: ChannelEvent) -> bool:
        if observer.closed:
            return False
        try:
            await asyncio.wait_for(observer.deliver(channel, event), timeout=self.delivery_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Delivery of %s to %s timed out after %ss",
                event.name,
                observer.id,
                self.delivery_timeout,
            )
            return False
        except Exception as exc:  # noqa: BLE001
            logger.warning("Delivery of %s to %s failed: %s", event.name, observer.id, exc)
            return False
        return True
