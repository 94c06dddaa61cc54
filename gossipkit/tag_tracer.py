"""Connection-manager tagging driven by pubsub events."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

from gossipkit.trace import RawTracer
from gossipkit.tracer import (
    REJECT_VALIDATION_FAILED,
    REJECT_VALIDATION_IGNORED,
    REJECT_VALIDATION_THROTTLED,
)
from gossipkit.validation import Message

log = logging.getLogger(__name__)

GOSSIPSUB_CONN_TAG_BUMP_MESSAGE_DELIVERY = 1
"""Added to a peer's delivery tag each time it delivers a message first."""
GOSSIPSUB_CONN_TAG_DECAY_INTERVAL = 600.0
"""Seconds between decays of delivery tags."""
GOSSIPSUB_CONN_TAG_DECAY_AMOUNT = 1
"""Subtracted from delivery tags at each decay."""
GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP = 15
"""Maximum value of a delivery tag."""

DIRECT_PEER_TAG = "pubsub:<direct>"

_CLEAR_NEAR_FIRST_REASONS = frozenset(
    {REJECT_VALIDATION_THROTTLED, REJECT_VALIDATION_IGNORED, REJECT_VALIDATION_FAILED}
)


def topic_tag(topic: str) -> str:
    """Return the protection tag used for mesh peers of a topic."""
    return f"pubsub:{topic}"


class DecayingTag:
    """A per-peer counter bounded to ``[0, cap]`` that decays by a fixed amount."""

    def __init__(
        self,
        name: str,
        interval: float,
        decay_amount: int,
        cap: int,
        on_close: Callable[["DecayingTag"], None] | None = None,
    ):
        self.name = name
        self.interval = interval
        self.decay_amount = decay_amount
        self.cap = cap
        self._on_close = on_close
        self._values: dict[str, int] = {}
        self._lock = threading.Lock()
        self._closed = False

    def bump(self, peer: str, delta: int) -> None:
        """Add ``delta`` to the peer's value, keeping it within the bounds."""
        with self._lock:
            if self._closed:
                raise RuntimeError(f"decaying tag {self.name} is closed")
            value = self._values.get(peer, 0) + delta
            value = min(max(value, 0), self.cap)
            if value > 0:
                self._values[peer] = value
            else:
                self._values.pop(peer, None)

    def decay(self) -> None:
        """Apply one decay step; values reaching zero are removed."""
        with self._lock:
            for peer in list(self._values):
                value = self._values[peer] - self.decay_amount
                if value <= 0:
                    del self._values[peer]
                else:
                    self._values[peer] = value

    def value(self, peer: str) -> int | None:
        """Return the peer's current value, or None if the tag is not applied."""
        with self._lock:
            return self._values.get(peer)

    def close(self) -> None:
        """Remove the tag from every peer and stop accepting bumps."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._values.clear()
        if self._on_close is not None:
            self._on_close(self)


class ConnManager:
    """In-memory connection manager tracking protections and decaying tags."""

    supports_decay = True

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._protected: dict[str, set[str]] = {}
        self._decaying: dict[str, DecayingTag] = {}

    def protect(self, peer: str, tag: str) -> None:
        """Protect the peer's connections under ``tag``."""
        with self._lock:
            self._protected.setdefault(peer, set()).add(tag)

    def unprotect(self, peer: str, tag: str) -> bool:
        """Remove protection ``tag``; return whether other tags still protect the peer."""
        with self._lock:
            tags = self._protected.get(peer)
            if tags is None:
                return False
            tags.discard(tag)
            if not tags:
                del self._protected[peer]
                return False
            return True

    def is_protected(self, peer: str, tag: str | None = None) -> bool:
        """Return whether the peer is protected by ``tag``, or by any tag when None."""
        with self._lock:
            tags = self._protected.get(peer, set())
            return bool(tags) if tag is None else tag in tags

    def register_decaying_tag(
        self, name: str, interval: float, decay_amount: int, cap: int
    ) -> DecayingTag:
        """Create a decaying tag; names must be unique."""
        with self._lock:
            if name in self._decaying:
                raise ValueError(f"decaying tag with name {name} already exists")
            tag = DecayingTag(name, interval, decay_amount, cap, self._unregister)
            self._decaying[name] = tag
            return tag

    def _unregister(self, tag: DecayingTag) -> None:
        with self._lock:
            if self._decaying.get(tag.name) is tag:
                del self._decaying[tag.name]

    def tag_info(self, peer: str) -> dict[str, int]:
        """Return the decaying tags applied to the peer, by name."""
        with self._lock:
            tags = list(self._decaying.values())
        info = {}
        for tag in tags:
            value = tag.value(peer)
            if value is not None:
                info[tag.name] = value
        return info

    def decay(self) -> None:
        """Apply one decay step to every registered decaying tag."""
        with self._lock:
            tags = list(self._decaying.values())
        for tag in tags:
            tag.decay()


def _default_message_id(msg: Message) -> str:
    if msg.id:
        return msg.id
    return ((msg.from_peer or b"") + (msg.seqno or b"")).decode("latin-1")


class TagTracer(RawTracer):
    """Tags peer connections according to their behaviour.

    Direct peers and mesh peers are protected; peers delivering a message first,
    or while it is still validating, get their delivery tag for the topic bumped.
    """

    def __init__(
        self,
        cmgr: ConnManager,
        message_id: Callable[[Message], str] | None = None,
    ):
        self._cmgr = cmgr
        self._decay_supported = bool(getattr(cmgr, "supports_decay", False))
        if not self._decay_supported:
            log.debug(
                "connection manager does not support decaying tags, "
                "delivery tags will not be applied"
            )
        self._message_id = message_id or _default_message_id
        self._direct: frozenset[str] | None = None
        self._decaying: dict[str, DecayingTag] = {}
        self._near_first: dict[str, set[str]] = {}
        self._lock = threading.RLock()

    def start(
        self,
        message_id: Callable[[Message], str] | None = None,
        direct: Iterable[str] | None = None,
    ) -> None:
        """Adopt the router's message id function and set of direct peers."""
        if message_id is not None:
            self._message_id = message_id
        self._direct = None if direct is None else frozenset(direct)

    def _add_delivery_tag(self, topic: str) -> None:
        if not self._decay_supported:
            return
        name = f"pubsub-deliveries:{topic}"
        with self._lock:
            try:
                tag = self._cmgr.register_decaying_tag(
                    name,
                    GOSSIPSUB_CONN_TAG_DECAY_INTERVAL,
                    GOSSIPSUB_CONN_TAG_DECAY_AMOUNT,
                    GOSSIPSUB_CONN_TAG_MESSAGE_DELIVERY_CAP,
                )
            except Exception as exc:
                log.warning("unable to create decaying delivery tag: %s", exc)
                return
            self._decaying[topic] = tag

    def _remove_delivery_tag(self, topic: str) -> None:
        with self._lock:
            tag = self._decaying.pop(topic, None)
        if tag is None:
            return
        try:
            tag.close()
        except Exception as exc:
            log.warning("error closing decaying connmgr tag: %s", exc)

    def _bump_delivery_tag(self, peer: str, topic: str) -> None:
        with self._lock:
            tag = self._decaying.get(topic)
        if tag is None:
            raise LookupError(f"no decaying tag registered for topic {topic}")
        tag.bump(peer, GOSSIPSUB_CONN_TAG_BUMP_MESSAGE_DELIVERY)

    def _bump_tags_for_message(self, peer: str, msg: Message) -> None:
        try:
            self._bump_delivery_tag(peer, msg.topic_name())
        except Exception as exc:
            log.warning("error bumping delivery tag: %s", exc)

    def near_first_peers(self, msg: Message) -> list[str]:
        """Return the peers that delivered the message while it was validating."""
        with self._lock:
            return list(self._near_first.get(self._message_id(msg), ()))

    def add_peer(self, peer: str, protocol: str) -> None:
        if self._direct is not None and peer in self._direct:
            self._cmgr.protect(peer, DIRECT_PEER_TAG)

    def join(self, topic: str) -> None:
        self._add_delivery_tag(topic)

    def leave(self, topic: str) -> None:
        self._remove_delivery_tag(topic)

    def graft(self, peer: str, topic: str) -> None:
        self._cmgr.protect(peer, topic_tag(topic))

    def prune(self, peer: str, topic: str) -> None:
        self._cmgr.unprotect(peer, topic_tag(topic))

    def validate_message(self, msg: Message) -> None:
        with self._lock:
            self._near_first.setdefault(self._message_id(msg), set())

    def duplicate_message(self, msg: Message) -> None:
        with self._lock:
            peers = self._near_first.get(self._message_id(msg))
            if peers is not None:
                peers.add(msg.received_from)

    def deliver_message(self, msg: Message) -> None:
        near_first = self.near_first_peers(msg)
        self._bump_tags_for_message(msg.received_from, msg)
        for peer in near_first:
            self._bump_tags_for_message(peer, msg)
        with self._lock:
            self._near_first.pop(self._message_id(msg), None)

    def reject_message(self, msg: Message, reason: str) -> None:
        # Only messages that went through the validation pipeline lose their state;
        # other rejections skip the queue and the message may still be validating.
        if reason in _CLEAR_NEAR_FIRST_REASONS:
            with self._lock:
                self._near_first.pop(self._message_id(msg), None)