"""In-memory replay-nonce store for spent payment authorizations."""

from __future__ import annotations

import threading
import time


class NonceStore:
    """Thread-safe ledger of used authorization nonces.

    Each nonce is remembered until its authorization's ``validBefore``
    passes; after that the signature is unusable anyway and the entry is
    dropped.
    """

    def __init__(self) -> None:
        self._used: dict[str, float] = {}  # nonce -> expiry timestamp
        self._lock = threading.Lock()

    def is_used(self, nonce: str) -> bool:
        self._cleanup()
        with self._lock:
            return nonce.lower() in self._used

    def check_and_record(self, nonce: str, expires_at: float) -> bool:
        """Record a nonce. Returns True if new, False if already used (replay)."""
        self._cleanup()
        key = nonce.lower()
        with self._lock:
            if key in self._used:
                return False
            self._used[key] = expires_at
            return True

    def discard(self, nonce: str) -> None:
        """Release a recorded nonce (its settlement never went through)."""
        with self._lock:
            self._used.pop(nonce.lower(), None)

    def _cleanup(self) -> None:
        """Remove expired nonces."""
        now = time.time()
        with self._lock:
            self._used = {n: e for n, e in self._used.items() if e > now}

    def __len__(self) -> int:
        with self._lock:
            return len(self._used)
