"""Tracing of pubsub internals: structured trace events and low-level raw tracers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Protocol

from gossipkit.subscription_filter import SubOpts
from gossipkit.validation import Message


class TraceEventType(Enum):
    """Kind of a structured trace event."""

    PUBLISH_MESSAGE = 0
    REJECT_MESSAGE = 1
    DUPLICATE_MESSAGE = 2
    DELIVER_MESSAGE = 3
    ADD_PEER = 4
    REMOVE_PEER = 5
    RECV_RPC = 6
    SEND_RPC = 7
    DROP_RPC = 8
    JOIN = 9
    LEAVE = 10
    GRAFT = 11
    PRUNE = 12


@dataclass
class TraceEvent:
    """A structured trace event; fields that do not apply to its kind stay None."""

    type: TraceEventType
    peer_id: str
    timestamp: int
    message_id: str | None = None
    topic: str | None = None
    received_from: str | None = None
    reason: str | None = None
    peer: str | None = None
    protocol: str | None = None
    send_to: str | None = None
    meta: dict[str, Any] | None = None


@dataclass
class PeerInfo:
    """A peer suggested in a PRUNE, with its optional signed record."""

    peer_id: bytes = b""
    signed_peer_record: bytes | None = None


@dataclass
class ControlIHave:
    """Announcement of message ids available for a topic."""

    topic_id: str = ""
    message_ids: list[str] = field(default_factory=list)


@dataclass
class ControlIWant:
    """Request for messages by id."""

    message_ids: list[str] = field(default_factory=list)


@dataclass
class ControlGraft:
    """Request to join a topic mesh."""

    topic_id: str = ""


@dataclass
class ControlPrune:
    """Notice of removal from a topic mesh, with suggested peers."""

    topic_id: str = ""
    peers: list[PeerInfo] = field(default_factory=list)
    backoff: int | None = None


@dataclass
class ControlMessage:
    """The control part of an RPC."""

    ihave: list[ControlIHave] = field(default_factory=list)
    iwant: list[ControlIWant] = field(default_factory=list)
    graft: list[ControlGraft] = field(default_factory=list)
    prune: list[ControlPrune] = field(default_factory=list)


@dataclass
class RPC:
    """An RPC exchanged with a peer."""

    subscriptions: list[SubOpts] = field(default_factory=list)
    publish: list[Message] = field(default_factory=list)
    control: ControlMessage | None = None
    from_peer: str = ""


class _EventTracer(Protocol):
    def trace(self, event: TraceEvent) -> None: ...


class RawTracer(Protocol):
    """Interface of a low-level tracer of pubsub internals.

    Hooks are called synchronously and must neither block nor modify their arguments.
    """

    def add_peer(self, peer: str, protocol: str) -> None:
        """A new peer was added."""
        ...

    def remove_peer(self, peer: str) -> None:
        """A peer was removed."""
        ...

    def join(self, topic: str) -> None:
        """A topic was joined."""
        ...

    def leave(self, topic: str) -> None:
        """A topic was abandoned."""
        ...

    def graft(self, peer: str, topic: str) -> None:
        """A peer was grafted onto a topic mesh."""
        ...

    def prune(self, peer: str, topic: str) -> None:
        """A peer was pruned from a topic mesh."""
        ...

    def validate_message(self, msg: Message) -> None:
        """A message entered the validation pipeline."""
        ...

    def deliver_message(self, msg: Message) -> None:
        """A message was delivered."""
        ...

    def reject_message(self, msg: Message, reason: str) -> None:
        """A message was rejected or ignored for ``reason``."""
        ...

    def duplicate_message(self, msg: Message) -> None:
        """A duplicate message was dropped."""
        ...

    def throttle_peer(self, peer: str) -> None:
        """A peer was throttled by the peer gater."""
        ...

    def recv_rpc(self, rpc: RPC) -> None:
        """An RPC was received."""
        ...

    def send_rpc(self, rpc: RPC, peer: str) -> None:
        """An RPC was sent."""
        ...

    def drop_rpc(self, rpc: RPC, peer: str) -> None:
        """An outbound RPC was dropped."""
        ...

    def undeliverable_message(self, msg: Message) -> None:
        """A message was dropped because a subscriber did not keep up."""
        ...


def _default_message_id(msg: Message) -> str:
    return msg.id


class PubSubTracer:
    """Fans events out to raw tracers and emits structured events to an event tracer.

    Message hooks skip the raw tracers for messages received from the local peer.
    """

    def __init__(
        self,
        tracer: _EventTracer | None = None,
        raw: Iterable[RawTracer] = (),
        peer_id: str = "",
        message_id: Callable[[Message], str] | None = None,
    ):
        self.tracer = tracer
        self.raw = list(raw)
        self.peer_id = peer_id
        self._message_id = message_id or _default_message_id

    def _emit(self, kind: TraceEventType, **fields: Any) -> None:
        if self.tracer is None:
            return
        event = TraceEvent(
            type=kind, peer_id=self.peer_id, timestamp=time.time_ns(), **fields
        )
        self.tracer.trace(event)

    def _remote(self, msg: Message) -> bool:
        return msg.received_from != self.peer_id

    def publish_message(self, msg: Message) -> None:
        self._emit(
            TraceEventType.PUBLISH_MESSAGE,
            message_id=self._message_id(msg),
            topic=msg.topic,
        )

    def validate_message(self, msg: Message) -> None:
        if self._remote(msg):
            for tr in self.raw:
                tr.validate_message(msg)

    def reject_message(self, msg: Message, reason: str) -> None:
        if self._remote(msg):
            for tr in self.raw:
                tr.reject_message(msg, reason)
        self._emit(
            TraceEventType.REJECT_MESSAGE,
            message_id=self._message_id(msg),
            received_from=msg.received_from,
            reason=reason,
            topic=msg.topic,
        )

    def duplicate_message(self, msg: Message) -> None:
        if self._remote(msg):
            for tr in self.raw:
                tr.duplicate_message(msg)
        self._emit(
            TraceEventType.DUPLICATE_MESSAGE,
            message_id=self._message_id(msg),
            received_from=msg.received_from,
            topic=msg.topic,
        )

    def deliver_message(self, msg: Message) -> None:
        if self._remote(msg):
            for tr in self.raw:
                tr.deliver_message(msg)
        self._emit(
            TraceEventType.DELIVER_MESSAGE,
            message_id=self._message_id(msg),
            topic=msg.topic,
            received_from=msg.received_from,
        )

    def add_peer(self, peer: str, protocol: str) -> None:
        for tr in self.raw:
            tr.add_peer(peer, protocol)
        self._emit(TraceEventType.ADD_PEER, peer=peer, protocol=protocol)

    def remove_peer(self, peer: str) -> None:
        for tr in self.raw:
            tr.remove_peer(peer)
        self._emit(TraceEventType.REMOVE_PEER, peer=peer)

    def recv_rpc(self, rpc: RPC) -> None:
        for tr in self.raw:
            tr.recv_rpc(rpc)
        if self.tracer is not None:
            self._emit(
                TraceEventType.RECV_RPC,
                received_from=rpc.from_peer,
                meta=self.rpc_meta(rpc),
            )

    def send_rpc(self, rpc: RPC, peer: str) -> None:
        for tr in self.raw:
            tr.send_rpc(rpc, peer)
        if self.tracer is not None:
            self._emit(TraceEventType.SEND_RPC, send_to=peer, meta=self.rpc_meta(rpc))

    def drop_rpc(self, rpc: RPC, peer: str) -> None:
        for tr in self.raw:
            tr.drop_rpc(rpc, peer)
        if self.tracer is not None:
            self._emit(TraceEventType.DROP_RPC, send_to=peer, meta=self.rpc_meta(rpc))

    def undeliverable_message(self, msg: Message) -> None:
        for tr in self.raw:
            tr.undeliverable_message(msg)

    def rpc_meta(self, rpc: RPC) -> dict[str, Any]:
        """Summarise an RPC: message ids, subscriptions and control entries."""
        meta: dict[str, Any] = {
            "messages": [
                {"message_id": self._message_id(m), "topic": m.topic}
                for m in rpc.publish
            ],
            "subscription": [
                {"subscribe": sub.subscribe, "topic": sub.topic_id}
                for sub in rpc.subscriptions
            ],
        }
        control = rpc.control
        if control is not None:
            meta["control"] = {
                "ihave": [
                    {"topic": ctl.topic_id, "message_ids": list(ctl.message_ids)}
                    for ctl in control.ihave
                ],
                "iwant": [
                    {"message_ids": list(ctl.message_ids)} for ctl in control.iwant
                ],
                "graft": [{"topic": ctl.topic_id} for ctl in control.graft],
                "prune": [
                    {"topic": ctl.topic_id, "peers": [pi.peer_id for pi in ctl.peers]}
                    for ctl in control.prune
                ],
            }
        return meta

    def join(self, topic: str) -> None:
        for tr in self.raw:
            tr.join(topic)
        self._emit(TraceEventType.JOIN, topic=topic)

    def leave(self, topic: str) -> None:
        for tr in self.raw:
            tr.leave(topic)
        self._emit(TraceEventType.LEAVE, topic=topic)

    def graft(self, peer: str, topic: str) -> None:
        for tr in self.raw:
            tr.graft(peer, topic)
        self._emit(TraceEventType.GRAFT, peer=peer, topic=topic)

    def prune(self, peer: str, topic: str) -> None:
        for tr in self.raw:
            tr.prune(peer, topic)
        self._emit(TraceEventType.PRUNE, peer=peer, topic=topic)

    def throttle_peer(self, peer: str) -> None:
        for tr in self.raw:
            tr.throttle_peer(peer)