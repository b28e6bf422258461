"""Application storage with per-application locking.

All changes to an application happen under its lock, as a read, a pure
mutation, and a write. Reads without the lock see the latest committed
state.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Protocol, runtime_checkable

import structlog

from rollout_core.errors import LockTimeoutError, UnknownApplicationError
from rollout_core.schemas.application import Application

logger = structlog.get_logger(__name__)


@runtime_checkable
class ApplicationStore(Protocol):
    """Persistent application state.

    Stores backed by a remote service raise StateStoreUnavailableError when
    it cannot be reached; the orchestration loop skips the application for
    the cycle, as it does on lock timeouts.
    """

    def ids(self) -> list[str]:
        """Ids of all stored applications."""
        ...

    def read(self, application_id: str) -> Application:
        """The latest committed state of an application.

        Raises:
            UnknownApplicationError: If the application does not exist.
            StateStoreUnavailableError: If the store cannot be read.
        """
        ...

    def lock(self, application_id: str, timeout: float) -> AbstractContextManager[None]:
        """Hold the application's lock for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout.
        """
        ...

    def write(self, application: Application) -> None:
        """Commit an application. The caller must hold its lock.

        Raises:
            StateStoreUnavailableError: If the store cannot be written; nothing is committed.
        """
        ...


class InMemoryApplicationStore:
    """Application store kept in process memory.

    Example:
        >>> store = InMemoryApplicationStore()
        >>> store.create(application)
        >>> store.lock_and_store("tenant.app", lambda app: app.with_submission(rev), 10.0)
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._applications: dict[str, Application] = {}
        self._locks: dict[str, threading.Lock] = {}

    def create(self, application: Application) -> None:
        with self._guard:
            self._applications[application.id] = application
            self._locks.setdefault(application.id, threading.Lock())

    def ids(self) -> list[str]:
        with self._guard:
            return sorted(self._applications)

    def read(self, application_id: str) -> Application:
        """The application's committed state.

        Raises:
            UnknownApplicationError: If no such application is stored.
        """
        with self._guard:
            application = self._applications.get(application_id)
        if application is None:
            raise UnknownApplicationError(application_id)
        return application

    @contextmanager
    def lock(self, application_id: str, timeout: float) -> Iterator[None]:
        """Hold the application's lock.

        Raises:
            UnknownApplicationError: If no such application is stored.
            LockTimeoutError: If the lock is not acquired within the timeout.
        """
        with self._guard:
            app_lock = self._locks.get(application_id)
        if app_lock is None:
            raise UnknownApplicationError(application_id)
        if not app_lock.acquire(timeout=timeout):
            logger.warning("lock_timeout", application=application_id, timeout_seconds=timeout)
            raise LockTimeoutError(application_id, timeout)
        try:
            yield
        finally:
            app_lock.release()

    def write(self, application: Application) -> None:
        with self._guard:
            if application.id not in self._applications:
                raise UnknownApplicationError(application.id)
            self._applications[application.id] = application

    def lock_and_store(
        self,
        application_id: str,
        mutator: Callable[[Application], Application],
        timeout: float,
    ) -> Application:
        return lock_and_store(self, application_id, mutator, timeout)


def lock_and_store(
    store: ApplicationStore,
    application_id: str,
    mutator: Callable[[Application], Application],
    timeout: float,
) -> Application:
    """Apply a mutation to an application under its lock, and commit it.

    Args:
        store: The store holding the application.
        application_id: Application to mutate.
        mutator: Pure function from the current to the new state.
        timeout: Seconds to wait for the lock.

    Returns:
        The committed application.
    """
    with store.lock(application_id, timeout):
        current = store.read(application_id)
        updated = mutator(current)
        if updated != current:
            store.write(updated)
        return updated


__all__ = ["ApplicationStore", "InMemoryApplicationStore", "lock_and_store"]
