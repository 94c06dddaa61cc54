"""Topic publishing options and per-topic peer event handling."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

RouterReady = Callable[[Any, str], bool]
"""Decides whether the router is ready to publish to a topic."""

ProvideKey = Callable[[], "tuple[Any, str]"]
"""Provides a private key and its peer id for publishing."""


class TopicClosedError(Exception):
    """Raised when a topic is used after it has been closed."""

    def __init__(self, message: str = "this Topic is closed, try opening a new one"):
        super().__init__(message)


class NilSignKeyError(ValueError):
    """Raised when no private key was provided for signing."""

    def __init__(self, message: str = "nil sign key"):
        super().__init__(message)


class EmptyPeerIDError(ValueError):
    """Raised when an empty peer id was provided."""

    def __init__(self, message: str = "empty peer ID"):
        super().__init__(message)


class EventType(Enum):
    """Kind of a topic peer event."""

    PEER_JOIN = 0
    PEER_LEAVE = 1


@dataclass(frozen=True)
class PeerEvent:
    """A peer joining or leaving a topic."""

    type: EventType
    peer: str


@dataclass
class PublishOptions:
    """Options controlling a single publication."""

    ready: RouterReady | None = None
    custom_key: ProvideKey | None = None
    local: bool = False

    def resolve_key(self, default_key: Any, default_peer_id: str) -> tuple[Any, str]:
        """Return the signing key and peer id to publish with.

        A custom key applies unless the publication is local.
        """
        if self.custom_key is None or self.local:
            return default_key, default_peer_id
        key, peer_id = self.custom_key()
        if key is None:
            raise NilSignKeyError()
        if not peer_id:
            raise EmptyPeerIDError()
        return key, peer_id


PubOpt = Callable[[PublishOptions], None]


def with_readiness(ready: RouterReady) -> PubOpt:
    """Publish only once ``ready`` reports the router ready."""

    def apply(pub: PublishOptions) -> None:
        pub.ready = ready

    return apply


def with_local_publication(local: bool) -> PubOpt:
    """Deliver only to in-process subscribers, not to mesh peers."""

    def apply(pub: PublishOptions) -> None:
        pub.local = local

    return apply


def with_secret_key_and_peer_id(key: Any, peer_id: str) -> PubOpt:
    """Sign with a custom key on behalf of ``peer_id``."""

    def apply(pub: PublishOptions) -> None:
        pub.custom_key = lambda: (key, peer_id)

    return apply


class TopicEventHandler:
    """Collects join and leave events of a topic's peers.

    A join and a leave of the same peer that have not yet been read cancel out.
    """

    def __init__(
        self,
        peers: Iterable[str] = (),
        on_cancel: Callable[["TopicEventHandler"], None] | None = None,
    ):
        self._cond = threading.Condition()
        self._log: dict[str, EventType] = {peer: EventType.PEER_JOIN for peer in peers}
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        with self._cond:
            return self._cancelled

    def send_notification(self, event: PeerEvent) -> None:
        """Record an event; ignored once the handler is cancelled."""
        with self._cond:
            if self._cancelled:
                return
            current = self._log.get(event.peer)
            if current is None:
                self._log[event.peer] = event.type
                self._cond.notify_all()
            elif current is not event.type:
                del self._log[event.peer]

    def cancel(self) -> None:
        """Stop receiving new events."""
        with self._cond:
            if self._cancelled:
                return
            self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel(self)

    def next_peer_event(self, timeout: float | None = None) -> PeerEvent:
        """Return the next event, waiting up to ``timeout`` seconds.

        Raises TimeoutError when no event arrives in time.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._log:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError("no peer event before the deadline")
                self._cond.wait(remaining)
            peer = next(iter(self._log))
            kind = self._log.pop(peer)
            return PeerEvent(type=kind, peer=peer)