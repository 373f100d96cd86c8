"""Inbound messages from observers."""

from __future__ import annotations

import logging

from shared.errors import BridgeError, Forbidden, NotFound, ValidationError
from shared.lifecycle import AgentLifecycleController
from shared.runtime import RuntimeClient

from .channels import ChannelEvent, ChannelKey, ChannelKind
from .observers import Observer
from .router import EventRouter

logger = logging.getLogger(__name__)


class MessageRelay:
    """Carry a user's chat message to its channel.

    On an agent channel the message is echoed as ``user:message``, sent to
    the agent's runtime instance, and the reply published as
    ``agent:message``. Other channels just get ``<kind>:message``.
    """

    def __init__(self, router: EventRouter, runtime: RuntimeClient, lifecycle: AgentLifecycleController):
        self.router = router
        self.runtime = runtime
        self.lifecycle = lifecycle

    async def send(self, observer: Observer, channel: ChannelKey, text: str) -> None:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text must not be empty")
        if not self.router.is_member(observer, channel):
            raise Forbidden(f"Subscribe to {channel} before sending to it")

        if channel.kind is not ChannelKind.AGENT:
            await self.router.publish(
                channel,
                ChannelEvent(f"{channel.kind.value}:message", {"content": text, "senderId": observer.principal}),
            )
            return

        await self.router.publish(channel, ChannelEvent("user:message", {"content": text}))
        try:
            agent = await self.lifecycle.lookup(channel.id)
            if agent.internal_id is None:
                raise NotFound(f"Agent {channel.id} has no running instance")
            reply = await self.runtime.send_message(agent.internal_id, text)
        except BridgeError as exc:
            logger.warning("Agent %s did not answer: %s", channel.id, exc)
            await self.router.publish(channel, ChannelEvent("agent:error", {"error": "Failed to get agent response"}))
            raise

        await self.router.publish(
            channel,
            ChannelEvent("agent:message", {"content": reply, "agentId": channel.id}),
        )
