"""Message validation pipeline: signature checks and per-topic validators."""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol, Sequence, Union

from gossipkit.tracer import (
    REJECT_INVALID_SIGNATURE,
    REJECT_VALIDATION_FAILED,
    REJECT_VALIDATION_IGNORED,
    REJECT_VALIDATION_QUEUE_FULL,
    REJECT_VALIDATION_THROTTLED,
)

log = logging.getLogger(__name__)

DEFAULT_VALIDATE_QUEUE_SIZE = 32
DEFAULT_VALIDATE_CONCURRENCY = 1024
DEFAULT_VALIDATE_THROTTLE = 8192

_WORKER_POLL_INTERVAL = 0.05


class ValidationResult(Enum):
    """Decision of a validator."""

    ACCEPT = 0
    """Deliver the message to the application and forward it."""
    REJECT = 1
    """Drop the message and penalise the peer that forwarded it."""
    IGNORE = 2
    """Drop the message without penalising the forwarding peer."""
    THROTTLED = -1
    """Internal: validation could not run because of throttling."""


class ValidationError(Exception):
    """Raised when a published message fails validation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(eq=False)
class Message:
    """A pubsub message together with its reception metadata."""

    data: bytes = b""
    topic: str | None = None
    from_peer: bytes | None = None
    seqno: bytes | None = None
    signature: bytes | None = None
    key: bytes | None = None
    received_from: str = ""
    local: bool = False
    id: str = ""
    validator_data: Any = None

    def topic_name(self) -> str:
        """Return the topic, or an empty string when the message has none."""
        return self.topic or ""


Validator = Callable[[str, Message], Union[bool, ValidationResult]]


class PipelineHost(Protocol):
    """What the pipeline needs from the pubsub instance it serves."""

    def message_id(self, msg: Message) -> str: ...

    def mark_seen(self, message_id: str) -> bool: ...

    def check_signing_policy(self, msg: Message) -> None: ...

    def verify_signature(self, msg: Message) -> bool: ...

    def deliver(self, msg: Message) -> None: ...


def _normalise(result: Any) -> ValidationResult:
    if isinstance(result, ValidationResult):
        if result in (
            ValidationResult.ACCEPT,
            ValidationResult.REJECT,
            ValidationResult.IGNORE,
        ):
            return result
    elif isinstance(result, bool):
        return ValidationResult.ACCEPT if result else ValidationResult.REJECT
    log.warning("unexpected result from validator: %r; ignoring message", result)
    return ValidationResult.IGNORE


class TopicValidator:
    """A registered validator with its timeout, concurrency limit and disposition."""

    def __init__(
        self,
        topic: str,
        validate: Validator,
        timeout: float = 0.0,
        concurrency: int = DEFAULT_VALIDATE_CONCURRENCY,
        inline: bool = False,
    ):
        self.topic = topic
        self.timeout = timeout
        self.concurrency = concurrency
        self.inline = inline
        self._validate = validate
        self._throttle = threading.Semaphore(concurrency)

    def _try_acquire(self) -> bool:
        return self._throttle.acquire(blocking=False)

    def _release(self) -> None:
        self._throttle.release()

    def _invoke(self, src: str, msg: Message) -> Any:
        try:
            return self._validate(src, msg)
        except Exception as exc:  # a failing validator must not stall the pipeline
            log.warning("validator for topic %r raised: %s; ignoring message", self.topic, exc)
            return ValidationResult.IGNORE

    def validate_message(self, src: str, msg: Message) -> ValidationResult:
        """Run the validator and return its decision; a timeout counts as ignore."""
        start = time.monotonic()
        try:
            if self.timeout > 0:
                outcome: list[Any] = []
                worker = threading.Thread(
                    target=lambda: outcome.append(self._invoke(src, msg)), daemon=True
                )
                worker.start()
                worker.join(self.timeout)
                if not outcome:
                    log.debug("validation timed out for topic %r", self.topic)
                    return ValidationResult.IGNORE
                result = outcome[0]
            else:
                result = self._invoke(src, msg)
            return _normalise(result)
        finally:
            log.debug("validation done; took %.6fs", time.monotonic() - start)


def make_validator(
    topic: str,
    validator: Validator,
    timeout: float = 0.0,
    concurrency: int = 0,
    inline: bool = False,
) -> TopicValidator:
    """Wrap a callable returning a bool or a ValidationResult into a TopicValidator."""
    if not callable(validator):
        name = topic or "(default)"
        raise TypeError(
            f"unknown validator type for topic {name}; must be a callable "
            "returning a bool or a ValidationResult"
        )
    return TopicValidator(
        topic,
        validator,
        timeout=timeout if timeout > 0 else 0.0,
        concurrency=concurrency if concurrency > 0 else DEFAULT_VALIDATE_CONCURRENCY,
        inline=inline,
    )


class ValidationPipeline:
    """Checks signatures and runs default and per-topic validators on messages.

    Messages pushed from the network are queued and handled by worker threads;
    inline validators run on the worker, the others on throttled threads.
    """

    def __init__(
        self,
        *,
        queue_size: int = DEFAULT_VALIDATE_QUEUE_SIZE,
        throttle: int = DEFAULT_VALIDATE_THROTTLE,
        workers: int | None = None,
    ):
        if queue_size <= 0:
            raise ValueError("validate queue size must be > 0")
        if throttle < 0:
            raise ValueError("validate throttle must be >= 0")
        if workers is None:
            workers = os.cpu_count() or 1
        if workers <= 0:
            raise ValueError("number of validation workers must be > 0")
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._throttle = threading.Semaphore(throttle)
        self._worker_count = workers
        self._lock = threading.Lock()
        self._topic_validators: dict[str, TopicValidator] = {}
        self._default_validators: list[TopicValidator] = []
        self._host: PipelineHost | None = None
        self._tracer: Any = None
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self, host: PipelineHost, tracer: Any = None) -> None:
        """Attach the pipeline to a host and start the worker threads."""
        if self._host is not None:
            raise RuntimeError("validation pipeline already started")
        self._host = host
        if tracer is not None:
            self._tracer = tracer
        for _ in range(self._worker_count):
            thread = threading.Thread(target=self._worker, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Stop the worker threads."""
        self._stopped.set()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join()
        self._threads.clear()

    def __enter__(self) -> "ValidationPipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def add_validator(
        self,
        topic: str,
        validator: Validator,
        timeout: float = 0.0,
        concurrency: int = 0,
        inline: bool = False,
    ) -> None:
        """Register the validator for a topic; a topic holds at most one."""
        val = make_validator(topic, validator, timeout, concurrency, inline)
        with self._lock:
            if topic in self._topic_validators:
                raise ValueError(f"duplicate validator for topic {topic}")
            self._topic_validators[topic] = val

    def add_default_validator(
        self,
        validator: Validator,
        timeout: float = 0.0,
        concurrency: int = 0,
        inline: bool = False,
    ) -> None:
        """Register a validator applying to every topic."""
        val = make_validator("", validator, timeout, concurrency, inline)
        with self._lock:
            self._default_validators.append(val)

    def remove_validator(self, topic: str) -> None:
        """Unregister the validator of a topic."""
        with self._lock:
            if topic not in self._topic_validators:
                raise KeyError(f"no validator for topic {topic}")
            del self._topic_validators[topic]

    def validators_for(self, msg: Message) -> list[TopicValidator]:
        """Return the default validators followed by the message topic's validator."""
        with self._lock:
            vals = list(self._default_validators)
            topic_val = self._topic_validators.get(msg.topic_name())
        if topic_val is not None:
            vals.append(topic_val)
        return vals

    def push_local(self, msg: Message) -> None:
        """Validate a locally published message synchronously; raise if it fails."""
        host = self._require_host()
        if self._tracer is not None:
            self._tracer.publish_message(msg)
        host.check_signing_policy(msg)
        self.validate(self.validators_for(msg), msg.received_from, msg, True)

    def push(self, src: str, msg: Message) -> bool:
        """Queue a received message; return True if it may be forwarded unvalidated."""
        vals = self.validators_for(msg)
        if vals or msg.signature is not None:
            try:
                self._queue.put_nowait((vals, src, msg))
            except queue.Full:
                log.debug("message validation throttled: queue full; dropping message from %s", src)
                self._reject(msg, REJECT_VALIDATION_QUEUE_FULL)
            return False
        return True

    def validate(
        self,
        validators: Sequence[TopicValidator],
        src: str,
        msg: Message,
        synchronous: bool = False,
    ) -> None:
        """Validate a message and deliver it if all validators accept.

        Raises ValidationError when the outcome is known to be a rejection or an
        ignore before any asynchronous validator runs.
        """
        host = self._require_host()
        tracer = self._tracer

        if msg.signature is not None and not self._signature_valid(host, msg):
            log.debug("message signature validation failed; dropping message from %s", src)
            self._reject(msg, REJECT_INVALID_SIGNATURE)
            raise ValidationError(REJECT_INVALID_SIGNATURE)

        if not host.mark_seen(host.message_id(msg)):
            if tracer is not None:
                tracer.duplicate_message(msg)
            return
        if tracer is not None:
            tracer.validate_message(msg)

        inline = [val for val in validators if val.inline or synchronous]
        deferred = [val for val in validators if not (val.inline or synchronous)]

        result = ValidationResult.ACCEPT
        for val in inline:
            outcome = val.validate_message(src, msg)
            if outcome is ValidationResult.REJECT:
                result = ValidationResult.REJECT
                break
            if outcome is ValidationResult.IGNORE:
                result = ValidationResult.IGNORE

        if result is ValidationResult.REJECT:
            log.debug("message validation failed; dropping message from %s", src)
            self._reject(msg, REJECT_VALIDATION_FAILED)
            raise ValidationError(REJECT_VALIDATION_FAILED)

        if deferred:
            if self._throttle.acquire(blocking=False):
                threading.Thread(
                    target=self._run_deferred,
                    args=(deferred, src, msg, result),
                    daemon=True,
                ).start()
            else:
                log.debug("message validation throttled; dropping message from %s", src)
                self._reject(msg, REJECT_VALIDATION_THROTTLED)
            return

        if result is ValidationResult.IGNORE:
            self._reject(msg, REJECT_VALIDATION_IGNORED)
            raise ValidationError(REJECT_VALIDATION_IGNORED)

        if self._stopped.is_set():
            raise RuntimeError("validation pipeline is stopped")
        host.deliver(msg)

    def _reject(self, msg: Message, reason: str) -> None:
        if self._tracer is not None:
            self._tracer.reject_message(msg, reason)

    def _require_host(self) -> PipelineHost:
        if self._host is None:
            raise RuntimeError("validation pipeline is not started")
        return self._host

    @staticmethod
    def _signature_valid(host: PipelineHost, msg: Message) -> bool:
        try:
            return bool(host.verify_signature(msg))
        except Exception as exc:
            log.debug("signature verification error: %s", exc)
            return False

    def _worker(self) -> None:
        while not self._stopped.is_set():
            try:
                vals, src, msg = self._queue.get(timeout=_WORKER_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self.validate(vals, src, msg, False)
            except (ValidationError, RuntimeError):
                pass

    def _run_deferred(
        self,
        vals: list[TopicValidator],
        src: str,
        msg: Message,
        prior: ValidationResult,
    ) -> None:
        try:
            self._do_validate_topic(vals, src, msg, prior)
        finally:
            self._throttle.release()

    def _do_validate_topic(
        self,
        vals: list[TopicValidator],
        src: str,
        msg: Message,
        prior: ValidationResult,
    ) -> None:
        result = self._validate_topic(vals, src, msg)
        if result is ValidationResult.ACCEPT and prior is not ValidationResult.ACCEPT:
            result = prior

        if result is ValidationResult.ACCEPT:
            self._require_host().deliver(msg)
        elif result is ValidationResult.REJECT:
            log.debug("message validation failed; dropping message from %s", src)
            self._reject(msg, REJECT_VALIDATION_FAILED)
        elif result is ValidationResult.IGNORE:
            log.debug("message validation punted; ignoring message from %s", src)
            self._reject(msg, REJECT_VALIDATION_IGNORED)
        else:
            log.debug("message validation throttled; ignoring message from %s", src)
            self._reject(msg, REJECT_VALIDATION_THROTTLED)

    def _validate_topic(
        self, vals: list[TopicValidator], src: str, msg: Message
    ) -> ValidationResult:
        if len(vals) == 1:
            return self._validate_single(vals[0], src, msg)

        results: queue.Queue = queue.Queue()

        def run(val: TopicValidator) -> None:
            try:
                results.put(val.validate_message(src, msg))
            finally:
                val._release()

        for val in vals:
            if val._try_acquire():
                threading.Thread(target=run, args=(val,), daemon=True).start()
            else:
                log.debug("validation throttled for topic %s", val.topic)
                results.put(ValidationResult.THROTTLED)

        result = ValidationResult.ACCEPT
        for _ in vals:
            outcome = results.get()
            if outcome is ValidationResult.REJECT:
                return ValidationResult.REJECT
            if outcome is ValidationResult.IGNORE:
                # throttling outranks ignore: the throttled validator might have rejected
                if result is not ValidationResult.THROTTLED:
                    result = ValidationResult.IGNORE
            elif outcome is ValidationResult.THROTTLED:
                result = ValidationResult.THROTTLED
        return result

    @staticmethod
    def _validate_single(val: TopicValidator, src: str, msg: Message) -> ValidationResult:
        if not val._try_acquire():
            log.debug("validation throttled for topic %s", val.topic)
            return ValidationResult.THROTTLED
        try:
            return val.validate_message(src, msg)
        finally:
            val._release()