import queue
import threading
import time

import pytest

from gossipkit.tracer import (
    REJECT_INVALID_SIGNATURE,
    REJECT_MISSING_SIGNATURE,
    REJECT_VALIDATION_FAILED,
    REJECT_VALIDATION_IGNORED,
    REJECT_VALIDATION_QUEUE_FULL,
    REJECT_VALIDATION_THROTTLED,
)
from gossipkit.validation import (
    Message,
    ValidationError,
    ValidationPipeline,
    ValidationResult,
    make_validator,
)


class FakeHost:
    def __init__(self):
        self._lock = threading.Lock()
        self.seen = set()
        self.delivered = queue.Queue()
        self.policy_error = None

    def message_id(self, msg):
        return f"{msg.from_peer!r}:{msg.seqno!r}:{msg.data!r}"

    def mark_seen(self, message_id):
        with self._lock:
            if message_id in self.seen:
                return False
            self.seen.add(message_id)
            return True

    def check_signing_policy(self, msg):
        if self.policy_error is not None:
            raise self.policy_error

    def verify_signature(self, msg):
        return msg.signature == b"good-signature"

    def deliver(self, msg):
        self.delivered.put(msg)


class RecordingTracer:
    def __init__(self):
        self._lock = threading.Lock()
        self.events = []

    def _record(self, kind, msg, reason=None):
        with self._lock:
            self.events.append((kind, msg, reason))

    def publish_message(self, msg):
        self._record("publish", msg)

    def validate_message(self, msg):
        self._record("validate", msg)

    def duplicate_message(self, msg):
        self._record("duplicate", msg)

    def reject_message(self, msg, reason):
        self._record("reject", msg, reason)

    def kinds(self):
        with self._lock:
            return [kind for kind, _, _ in self.events]

    def reasons(self):
        with self._lock:
            return [reason for kind, _, reason in self.events if kind == "reject"]


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_msg(data, topic="foobar", seqno=b"1", signature=None):
    return Message(
        data=data,
        topic=topic,
        from_peer=b"peer-a",
        seqno=seqno,
        signature=signature,
        received_from="peer-a",
    )


def drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def tracer():
    return RecordingTracer()


@pytest.fixture
def pipeline(host, tracer):
    pipe = ValidationPipeline(workers=2)
    pipe.start(host, tracer)
    yield pipe
    pipe.stop()


def test_message_topic_name():
    assert Message().topic_name() == ""
    assert Message(topic="x").topic_name() == "x"


def test_register_unregister_validator(pipeline):
    pipeline.add_validator("foo", lambda src, msg: True)
    assert [v.topic for v in pipeline.validators_for(Message(topic="foo"))] == ["foo"]
    pipeline.remove_validator("foo")
    assert pipeline.validators_for(Message(topic="foo")) == []
    with pytest.raises(KeyError):
        pipeline.remove_validator("foo")


def test_register_duplicate_validator(pipeline):
    pipeline.add_validator("foo", lambda src, msg: True)
    with pytest.raises(ValueError, match="duplicate validator for topic foo"):
        pipeline.add_validator("foo", lambda src, msg: True)


def test_register_validator_ex(pipeline):
    pipeline.add_validator("test", lambda src, msg: True)
    other = ValidationPipeline(workers=1)
    other.add_validator("test", lambda src, msg: ValidationResult.ACCEPT)
    assert len(other.validators_for(Message(topic="test"))) == 1
    with pytest.raises(TypeError):
        other.add_default_validator("bogus")
    bogus = ValidationPipeline(workers=1)
    with pytest.raises(TypeError):
        bogus.add_validator("test", "bogus")
    assert bogus.validators_for(Message(topic="test")) == []


def test_make_validator_unknown_default_topic_name():
    with pytest.raises(TypeError, match=r"\(default\)"):
        make_validator("", 42)


def test_make_validator_defaults():
    val = make_validator("t", lambda src, msg: True, timeout=-1, concurrency=0)
    assert val.timeout == 0.0
    assert val.concurrency == 1024
    assert val.inline is False


def test_validators_for_orders_defaults_first(pipeline):
    pipeline.add_default_validator(lambda src, msg: True)
    pipeline.add_validator("foobar", lambda src, msg: True)
    topics = [v.topic for v in pipeline.validators_for(Message(topic="foobar"))]
    assert topics == ["", "foobar"]
    assert [v.topic for v in pipeline.validators_for(Message(topic="other"))] == [""]


def test_validate_remote_messages(pipeline, host):
    pipeline.add_validator("foobar", lambda src, msg: b"illegal" not in msg.data)
    cases = [
        (b"this is a legal message", True),
        (b"there also is nothing controversial about this message", True),
        (b"openly illegal content will be censored", False),
        (b"but subversive actors will use leetspeek to spread 1ll3g4l content", True),
    ]
    for data, validates in cases:
        assert pipeline.push("peer-b", make_msg(data)) is False
        if validates:
            assert host.delivered.get(timeout=2).data == data
        else:
            with pytest.raises(queue.Empty):
                host.delivered.get(timeout=0.3)


def test_validate_local_messages(pipeline, host, tracer):
    pipeline.add_validator("foobar", lambda src, msg: b"illegal" not in msg.data)
    cases = [
        (b"this is a legal message", True),
        (b"there also is nothing controversial about this message", True),
        (b"openly illegal content will be censored", False),
        (b"but subversive actors will use leetspeek to spread 1ll3g4l content", True),
    ]
    for data, validates in cases:
        if validates:
            pipeline.push_local(make_msg(data))
            assert host.delivered.get_nowait().data == data
        else:
            with pytest.raises(ValidationError) as excinfo:
                pipeline.push_local(make_msg(data))
            assert excinfo.value.reason == REJECT_VALIDATION_FAILED
    assert tracer.reasons() == [REJECT_VALIDATION_FAILED]


@pytest.mark.parametrize("concurrency", [10, 2])
def test_validate_overload(host, tracer, concurrency):
    pipe = ValidationPipeline(workers=1)
    pipe.start(host, tracer)
    block = threading.Event()
    try:
        pipe.add_validator(
            "foobar",
            lambda src, msg: block.wait(5),
            concurrency=concurrency,
        )
        for i in range(concurrency + 1):
            pipe.push("peer-b", make_msg(f"message {i}".encode(), seqno=str(i).encode()))

        assert wait_until(lambda: tracer.reasons() == [REJECT_VALIDATION_THROTTLED])
        block.set()
        assert wait_until(lambda: host.delivered.qsize() == concurrency)
        time.sleep(0.1)
        assert len(drain(host.delivered)) == concurrency
    finally:
        block.set()
        pipe.stop()


@pytest.mark.parametrize(
    "kwargs",
    [{"queue_size": 0}, {"queue_size": -3}, {"workers": 0}, {"throttle": -1}],
)
def test_invalid_pipeline_options(kwargs):
    with pytest.raises(ValueError):
        ValidationPipeline(**kwargs)


def test_push_without_validators_forwards_immediately(pipeline, host, tracer):
    assert pipeline.push("peer-b", make_msg(b"plain")) is True
    time.sleep(0.1)
    assert host.delivered.empty()
    assert tracer.kinds() == []


def test_push_signed_message_is_validated(pipeline, host):
    msg = make_msg(b"signed", signature=b"good-signature")
    assert pipeline.push("peer-b", msg) is False
    assert host.delivered.get(timeout=2) is msg


def test_invalid_signature_rejected(pipeline, tracer):
    with pytest.raises(ValidationError) as excinfo:
        pipeline.push_local(make_msg(b"forged", signature=b"bad"))
    assert excinfo.value.reason == REJECT_INVALID_SIGNATURE
    assert tracer.reasons() == [REJECT_INVALID_SIGNATURE]


def test_duplicate_message_is_dropped(pipeline, host, tracer):
    msg = make_msg(b"once")
    pipeline.push_local(msg)
    assert pipeline.push_local(make_msg(b"once")) is None
    assert len(drain(host.delivered)) == 1
    assert tracer.kinds() == ["publish", "validate", "publish", "duplicate"]


def test_inline_ignore_raises(pipeline, host):
    pipeline.add_validator("foobar", lambda src, msg: ValidationResult.IGNORE)
    with pytest.raises(ValidationError) as excinfo:
        pipeline.push_local(make_msg(b"meh"))
    assert excinfo.value.reason == REJECT_VALIDATION_IGNORED
    assert host.delivered.empty()


def test_reject_takes_precedence_over_ignore(pipeline):
    pipeline.add_default_validator(lambda src, msg: ValidationResult.IGNORE)
    pipeline.add_validator("foobar", lambda src, msg: ValidationResult.REJECT)
    with pytest.raises(ValidationError) as excinfo:
        pipeline.push_local(make_msg(b"bad"))
    assert excinfo.value.reason == REJECT_VALIDATION_FAILED


def test_inline_ignore_carries_over_to_async_accept(pipeline, host, tracer):
    pipeline.add_default_validator(lambda src, msg: ValidationResult.IGNORE, inline=True)
    pipeline.add_validator("foobar", lambda src, msg: True)
    assert pipeline.push("peer-b", make_msg(b"ignored")) is False
    assert wait_until(lambda: tracer.reasons() == [REJECT_VALIDATION_IGNORED])
    assert host.delivered.empty()


def test_multiple_async_validators_one_rejects(pipeline, host, tracer):
    pipeline.add_default_validator(lambda src, msg: True)
    pipeline.add_validator("foobar", lambda src, msg: False)
    assert len(pipeline.validators_for(Message(topic="foobar"))) == 2
    assert pipeline.push("peer-b", make_msg(b"rejected")) is False
    assert wait_until(lambda: tracer.reasons() == [REJECT_VALIDATION_FAILED])
    assert host.delivered.empty()


def test_multiple_async_validators_all_accept(pipeline, host):
    pipeline.add_default_validator(lambda src, msg: True)
    pipeline.add_validator("foobar", lambda src, msg: ValidationResult.ACCEPT)
    msg = make_msg(b"accepted")
    assert pipeline.push("peer-b", msg) is False
    delivered = host.delivered.get(timeout=2)
    assert delivered is msg
    assert delivered.data == b"accepted"


def test_global_throttle_rejects_async_validation(host, tracer):
    pipe = ValidationPipeline(throttle=0, workers=1)
    pipe.start(host, tracer)
    try:
        pipe.add_validator("foobar", lambda src, msg: True)
        pipe.push("peer-b", make_msg(b"throttled"))
        assert wait_until(lambda: tracer.reasons() == [REJECT_VALIDATION_THROTTLED])
        assert host.delivered.empty()
    finally:
        pipe.stop()


def test_queue_full_drops_message(host, tracer):
    pipe = ValidationPipeline(queue_size=1, workers=1)
    pipe.start(host, tracer)
    entered = threading.Event()
    release = threading.Event()

    def slow(src, msg):
        entered.set()
        release.wait(5)
        return True

    try:
        pipe.add_validator("foobar", slow, inline=True)
        assert pipe.push("peer-b", make_msg(b"m1")) is False
        assert entered.wait(2)
        assert pipe.push("peer-b", make_msg(b"m2")) is False
        assert pipe.push("peer-b", make_msg(b"m3")) is False
        assert tracer.reasons() == [REJECT_VALIDATION_QUEUE_FULL]
        release.set()
        assert wait_until(lambda: host.delivered.qsize() == 2)
        assert sorted(m.data for m in drain(host.delivered)) == [b"m1", b"m2"]
    finally:
        release.set()
        pipe.stop()


def test_validate_message_timeout_counts_as_ignore():
    def sleepy(src, msg):
        time.sleep(0.5)
        return True

    val = make_validator("t", sleepy, timeout=0.05)
    assert val.validate_message("peer-b", make_msg(b"x")) is ValidationResult.IGNORE


@pytest.mark.parametrize(
    "result, expected",
    [
        (True, ValidationResult.ACCEPT),
        (False, ValidationResult.REJECT),
        (ValidationResult.IGNORE, ValidationResult.IGNORE),
        (ValidationResult.THROTTLED, ValidationResult.IGNORE),
        (5, ValidationResult.IGNORE),
    ],
)
def test_validate_message_result_mapping(result, expected):
    val = make_validator("t", lambda src, msg: result)
    assert val.validate_message("peer-b", make_msg(b"x")) is expected


def test_validate_message_raising_validator_is_ignored():
    def broken(src, msg):
        raise RuntimeError("boom")

    val = make_validator("t", broken)
    assert val.validate_message("peer-b", make_msg(b"x")) is ValidationResult.IGNORE


def test_signing_policy_error_propagates(pipeline, host, tracer):
    host.policy_error = ValidationError(REJECT_MISSING_SIGNATURE)
    with pytest.raises(ValidationError) as excinfo:
        pipeline.push_local(make_msg(b"unsigned"))
    assert excinfo.value.reason == REJECT_MISSING_SIGNATURE
    assert tracer.kinds() == ["publish"]


def test_push_local_before_start_raises():
    pipe = ValidationPipeline(workers=1)
    with pytest.raises(RuntimeError, match="not started"):
        pipe.push_local(make_msg(b"early"))


def test_push_local_after_stop_raises(host, tracer):
    pipe = ValidationPipeline(workers=1)
    pipe.start(host, tracer)
    pipe.stop()
    with pytest.raises(RuntimeError, match="stopped"):
        pipe.push_local(make_msg(b"late"))
    assert host.delivered.empty()


def test_start_twice_raises(pipeline, host):
    with pytest.raises(RuntimeError, match="already started"):
        pipeline.start(host)