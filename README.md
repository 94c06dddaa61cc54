# gossipkit

Building blocks for gossip-based publish/subscribe systems. Each module can be
used on its own or wired into a router of your own.

## Modules

- **`gossipkit.timecache`** – caches of recently seen message ids with a time to
  live (in seconds). `FirstSeenCache` expires an entry a fixed time after it was
  first added; `LastSeenCache` pushes the expiry forward each time the entry is
  added again or looked up with `has`. A background thread removes expired
  entries every `sweep_interval` seconds (60 by default). Build one with
  `new_time_cache(ttl, strategy, sweep_interval)`, where `strategy` is a
  `Strategy` member, and call `done()` (or use it as a context manager) to stop
  the background thread.
- **`gossipkit.subscription_filter`** – decides which topics may be subscribed
  to: `AllowlistSubscriptionFilter`, `RegexpSubscriptionFilter` (the pattern may
  match anywhere in the topic name, so anchor it yourself) and
  `LimitSubscriptionFilter`, which wraps another filter and raises
  `TooManySubscriptionsError` when one notification carries more `SubOpts` than
  its limit. `filter_subscriptions` keeps the topics a predicate accepts, removes
  duplicates, and drops topics whose subscribe and unsubscribe entries
  contradict each other.
- **`gossipkit.tracer`** – `BasicTracer` collects trace events in a buffer
  (optionally lossy) until `drain()` is called; events traced after `close()` are
  ignored. `JSONTracer` writes events to a file as newline-delimited JSON from a
  background thread: dataclass events become objects without their `None`
  fields, bytes are base64-encoded and enums are written by value. The module
  also defines the `REJECT_*` reason strings.
- **`gossipkit.trace`** – `PubSubTracer` forwards each internal event to the
  `RawTracer` objects you give it and, if an event tracer is set, emits a
  `TraceEvent` with a `TraceEventType`. RPCs are described with `RPC`,
  `ControlMessage`, `ControlIHave`, `ControlIWant`, `ControlGraft`,
  `ControlPrune` and `PeerInfo`; `rpc_meta` summarises one as a dictionary.
- **`gossipkit.validation`** – `ValidationPipeline` checks signatures and runs
  default and per-topic validators. A validator is a callable taking the source
  peer and the `Message` and returning a `bool` or a `ValidationResult`; each can
  have its own timeout, concurrency limit and inline flag. `push_local`
  validates synchronously and raises `ValidationError` on rejection, ignore or
  an invalid signature; `push` queues a received message for the worker threads.
- **`gossipkit.validation_builtin`** – `BasicSeqnoValidator` ignores replayed
  messages: it accepts a message only if its sequence number exceeds the
  highest one seen from its origin, which it keeps in a `PeerMetadataStore` you
  implement.
- **`gossipkit.tag_tracer`** – `TagTracer` is a raw tracer that tells an
  in-memory `ConnManager` which peers to keep: direct peers and mesh peers are
  protected, and peers that deliver a message first, or while it is still being
  validated, get their `DecayingTag` for the topic bumped (capped at 15).
- **`gossipkit.topic`** – publishing options (`PublishOptions`,
  `with_readiness`, `with_local_publication`, `with_secret_key_and_peer_id`) and
  `TopicEventHandler`, which reports peers joining or leaving a topic as
  `PeerEvent`s. A join and a leave of the same peer that have not been read yet
  cancel out; `next_peer_event(timeout)` raises `TimeoutError` when nothing
  arrives in time.

## Installation

```
pip install gossipkit
```

Python 3.10 or later is required. The package has no third-party dependencies.

## Examples

```python
import re

from gossipkit.subscription_filter import (
    LimitSubscriptionFilter,
    RegexpSubscriptionFilter,
    SubOpts,
    TooManySubscriptionsError,
)
from gossipkit.timecache import Strategy, new_time_cache

seen = new_time_cache(120.0, Strategy.LAST_SEEN, 60.0)
assert seen.add("msg-1")
assert not seen.add("msg-1")
seen.done()

limited = LimitSubscriptionFilter(RegexpSubscriptionFilter(re.compile(r"^chat/.*$")), 100)
accepted = limited.filter_incoming_subscriptions(
    "peer-a", [SubOpts("chat/general", True), SubOpts("spam", True)]
)
assert [sub.topic_id for sub in accepted] == ["chat/general"]

try:
    limited.filter_incoming_subscriptions(
        "peer-a", [SubOpts(f"chat/{n}", True) for n in range(101)]
    )
except TooManySubscriptionsError:
    pass
```

The validation pipeline needs a host object providing `message_id`,
`mark_seen`, `check_signing_policy`, `verify_signature` and `deliver`:

```python
from gossipkit.validation import Message, ValidationError, ValidationPipeline


class Host:
    def __init__(self):
        self.seen = set()
        self.delivered = []

    def message_id(self, msg):
        return msg.id

    def mark_seen(self, message_id):
        if message_id in self.seen:
            return False
        self.seen.add(message_id)
        return True

    def check_signing_policy(self, msg):
        pass

    def verify_signature(self, msg):
        return True

    def deliver(self, msg):
        self.delivered.append(msg)


host = Host()
with ValidationPipeline(workers=1) as pipeline:
    pipeline.start(host)
    pipeline.add_validator("chat", lambda src, msg: b"spam" not in msg.data)
    pipeline.push_local(Message(data=b"hello", topic="chat", id="1"))
    try:
        pipeline.push_local(Message(data=b"spam", topic="chat", id="2"))
    except ValidationError as exc:
        assert exc.reason == "validation failed"

assert [m.data for m in host.delivered] == [b"hello"]
```

## What the package does not do

There is no network layer: no router, no transport, no peer connections and no
message signing or signature checking of its own. The validation pipeline
delivers messages to, and asks about signatures and seen ids from, the host
object you pass to `start`. `TopicEventHandler` receives events only through
`send_notification`. The `ConnManager` is an in-memory stand-in; its decaying
tags decay only when you call `decay()`. Trace events can be collected in memory
or written as JSON lines; there is no other file format and no sending of
traces to a remote peer.

## Running the tests

```
pip install -e ".[test]"
pytest
```