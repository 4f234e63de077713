"""Share one live feed subscription per topic between many consumers.

Opening the same feed twice wastes a connection and delivers every event twice,
so consumers never subscribe directly: they attach to the manager, which opens
the subscription on the first attach and closes it when the last consumer
detaches.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from workflow_mirror.feed.messages import ChangeMessage

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeMessage], None]


class Subscription(Protocol):
    def close(self) -> None: ...


class FeedTransport(Protocol):
    """The external change-feed client."""

    def subscribe(self, topic: str, on_message: Listener) -> Subscription: ...


@dataclass(frozen=True, slots=True)
class ChannelHandle:
    topic: str
    handle_id: int


@dataclass
class _Channel:
    subscription: Subscription
    listeners: dict[int, Listener] = field(default_factory=dict)


class ChannelManager:
    """Reference-counted registry of live subscriptions, keyed by topic."""

    def __init__(self, transport: FeedTransport) -> None:
        self._transport = transport
        self._channels: dict[str, _Channel] = {}
        self._ids = itertools.count(1)

    def attach(self, topic: str, listener: Listener) -> ChannelHandle:
        channel = self._channels.get(topic)
        if channel is None:
            subscription = self._transport.subscribe(
                topic, lambda message: self._deliver(topic, message)
            )
            channel = _Channel(subscription=subscription)
            self._channels[topic] = channel
            logger.info("Opened feed subscription", extra={"topic": topic})

        handle = ChannelHandle(topic=topic, handle_id=next(self._ids))
        channel.listeners[handle.handle_id] = listener
        return handle

    def detach(self, handle: ChannelHandle) -> None:
        channel = self._channels.get(handle.topic)
        if channel is None or channel.listeners.pop(handle.handle_id, None) is None:
            logger.debug("Ignoring detach of unknown handle", extra={"topic": handle.topic})
            return
        if channel.listeners:
            return

        del self._channels[handle.topic]
        channel.subscription.close()
        logger.info("Closed feed subscription", extra={"topic": handle.topic})

    def ref_count(self, topic: str) -> int:
        channel = self._channels.get(topic)
        return 0 if channel is None else len(channel.listeners)

    def is_open(self, topic: str) -> bool:
        return topic in self._channels

    def topics(self) -> list[str]:
        return sorted(self._channels)

    def close_all(self) -> None:
        for topic in list(self._channels):
            channel = self._channels.pop(topic)
            channel.subscription.close()
        logger.info("Closed all feed subscriptions")

    def _deliver(self, topic: str, message: ChangeMessage) -> None:
        channel = self._channels.get(topic)
        if channel is None:
            # Late delivery after the last consumer left.
            return
        for listener in list(channel.listeners.values()):
            try:
                listener(message)
            except Exception:
                logger.exception("Feed listener failed", extra={"topic": topic})
