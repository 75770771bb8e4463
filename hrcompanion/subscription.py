"""Ownership of the single active broadcast subscription."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)


class Disposable(Protocol):
    def dispose(self) -> None: ...

    @property
    def is_disposed(self) -> bool: ...


D = TypeVar("D", bound=Disposable)


class SubscriptionSlot:
    """Hold at most one active :class:`Disposable`.

    ``replace`` disposes the current handle before the factory creates the
    next one. The lock is re-entrant because a factory may deliver a terminal
    event synchronously, which calls back into :meth:`clear_if`.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._active: Optional[Disposable] = None

    @property
    def active(self) -> Optional[Disposable]:
        with self._lock:
            return self._active

    def replace(self, factory: Callable[[], D]) -> D:
        with self._lock:
            self._dispose_current()
            handle = factory()
            if not handle.is_disposed:
                self._active = handle
            return handle

    def release(self) -> None:
        with self._lock:
            self._dispose_current()

    def clear_if(self, handle: Disposable) -> bool:
        """Forget ``handle`` if it is still the active one. Does not dispose it."""
        with self._lock:
            if self._active is handle:
                self._active = None
                return True
            return False

    def _dispose_current(self) -> None:
        current, self._active = self._active, None
        if current is None:
            return
        try:
            current.dispose()
        except Exception:
            logger.exception("Disposing subscription failed")

    def __enter__(self) -> "SubscriptionSlot":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


__all__ = ["Disposable", "SubscriptionSlot"]
