"""Built-in validators."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from gossipkit.validation import Message, ValidationResult

log = logging.getLogger(__name__)


class PeerMetadataStore(ABC):
    """Storage of per-peer metadata."""

    @abstractmethod
    def get(self, peer: bytes) -> bytes | None:
        """Return the metadata for a peer, or None if there is none."""

    @abstractmethod
    def put(self, peer: bytes, value: bytes) -> None:
        """Set the metadata for a peer."""


def _uint64(raw: bytes | None) -> int:
    if not raw:
        return 0
    return int.from_bytes(raw[:8], "big")


class BasicSeqnoValidator:
    """Ignores messages whose seqno does not exceed the largest seen from their origin.

    The seqno acts as a per-origin nonce kept in a PeerMetadataStore, so replayed
    messages outside the seen-cache window are never propagated again. Requires
    signed messages with sequence numbers.
    """

    def __init__(self, meta: PeerMetadataStore):
        self._meta = meta
        self._lock = threading.Lock()

    def _nonce(self, peer: bytes) -> int | None:
        try:
            return _uint64(self._meta.get(peer))
        except Exception as exc:
            log.warning("error retrieving peer nonce: %s", exc)
            return None

    def __call__(self, src: str, msg: Message) -> ValidationResult:
        peer = msg.from_peer or b""
        seqno = _uint64(msg.seqno)

        with self._lock:
            nonce = self._nonce(peer)
        if nonce is None or seqno <= nonce:
            return ValidationResult.IGNORE

        # check again before committing, another validation may have raced us
        with self._lock:
            nonce = self._nonce(peer)
            if nonce is None or seqno <= nonce:
                return ValidationResult.IGNORE
            try:
                self._meta.put(peer, seqno.to_bytes(8, "big"))
            except Exception as exc:
                log.warning("error storing peer nonce: %s", exc)
        return ValidationResult.ACCEPT