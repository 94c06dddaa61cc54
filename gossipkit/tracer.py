"""Buffered event tracers, including one that writes newline-delimited JSON."""

from __future__ import annotations

import base64
import dataclasses
import json
import logging
import os
import threading
from enum import Enum
from typing import Any

log = logging.getLogger(__name__)

TRACE_BUFFER_SIZE = 1 << 16
MIN_TRACE_BATCH_SIZE = 16

REJECT_BLACKLISTED_PEER = "blacklisted peer"
REJECT_BLACKLISTED_SOURCE = "blacklisted source"
REJECT_MISSING_SIGNATURE = "missing signature"
REJECT_UNEXPECTED_SIGNATURE = "unexpected signature"
REJECT_UNEXPECTED_AUTH_INFO = "unexpected auth info"
REJECT_INVALID_SIGNATURE = "invalid signature"
REJECT_VALIDATION_QUEUE_FULL = "validation queue full"
REJECT_VALIDATION_THROTTLED = "validation throttled"
REJECT_VALIDATION_FAILED = "validation failed"
REJECT_VALIDATION_IGNORED = "validation ignored"
REJECT_SELF_ORIGIN = "self originated message"


class BasicTracer:
    """Collects trace events in a buffer until they are drained.

    A lossy tracer drops events once the buffer holds more than ``buffer_size``.
    Events traced after ``close`` are ignored.
    """

    def __init__(self, *, lossy: bool = False, buffer_size: int = TRACE_BUFFER_SIZE):
        self._cond = threading.Condition()
        self._buffer: list[Any] = []
        self._lossy = lossy
        self._buffer_size = buffer_size
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def trace(self, event: Any) -> None:
        """Buffer an event and wake any waiting consumer."""
        with self._cond:
            if self._closed:
                return
            if self._lossy and len(self._buffer) > self._buffer_size:
                log.debug("trace buffer overflow; dropping trace event")
            else:
                self._buffer.append(event)
            self._cond.notify_all()

    def close(self) -> None:
        """Stop accepting events."""
        with self._cond:
            if not self._closed:
                self._closed = True
                self._cond.notify_all()

    def drain(self) -> list[Any]:
        """Return all buffered events, leaving the buffer empty."""
        with self._cond:
            events, self._buffer = self._buffer, []
            return events

    def _wait_for_events(self) -> tuple[list[Any], bool]:
        with self._cond:
            while not self._buffer and not self._closed:
                self._cond.wait()
            events, self._buffer = self._buffer, []
            return events, self._closed


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return _to_jsonable(value.value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        result = {}
        for field in dataclasses.fields(value):
            item = getattr(value, field.name)
            if item is not None:
                result[field.name] = _to_jsonable(item)
        return result
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    return value


class JSONTracer(BasicTracer):
    """Tracer that writes events to a file as newline-delimited JSON.

    Dataclass events become objects without their ``None`` fields; bytes are
    base64-encoded and enums written by value. ``mode`` is ``"w"`` (truncate),
    ``"a"`` (append) or ``"x"`` (must not exist).
    """

    def __init__(self, path: str | os.PathLike[str], *, mode: str = "w"):
        if mode not in ("w", "a", "x"):
            raise ValueError(f"unsupported file mode: {mode!r}")
        super().__init__()
        self._file = open(path, mode, encoding="utf-8")
        self._writer = threading.Thread(target=self._write_loop, daemon=True)
        self._writer.start()

    def _write_loop(self) -> None:
        try:
            while True:
                events, closed = self._wait_for_events()
                for event in events:
                    try:
                        line = json.dumps(_to_jsonable(event), separators=(",", ":"))
                        self._file.write(line + "\n")
                    except (TypeError, ValueError, OSError) as exc:
                        log.warning("error writing event trace: %s", exc)
                self._file.flush()
                if closed:
                    return
        finally:
            self._file.close()

    def close(self) -> None:
        """Stop accepting events, write out what is buffered and close the file."""
        super().close()
        if self._writer is not threading.current_thread():
            self._writer.join()

    def __enter__(self) -> "JSONTracer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()