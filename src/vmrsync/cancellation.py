"""Cooperative cancellation for long-running operations."""

from __future__ import annotations

import threading

from .errors import OperationCancelledError


class CancellationToken:
    """Thread-safe flag checked at safe boundaries (between mappings, before fetches)."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation was cancelled")


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    """Return ``token`` or a fresh token that is never cancelled."""

    return token if token is not None else CancellationToken()
