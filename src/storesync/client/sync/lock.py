"""Sync lock: one sync run at a time.

Two levels:
- An in-process flag, checked first, rejects a second run in this process.
- A lease persisted in sync_metadata (sync_lock_expires_at) rejects a run
  from another process, and expires on its own if the holder crashed.

A timer mirrors the lease. If release() never comes, the timer drops the
in-process flag when the lease runs out, so the next caller can take over
the expired persisted lease. Each acquisition gets a token, and a holder
that outlived its lease releases with it so it cannot free a later run.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from storesync.core.timeutil import utcnow

if TYPE_CHECKING:
    from storesync.client.state import LocalStore
    from storesync.client.sync.metadata import SyncMetadataStore

logger = logging.getLogger(__name__)

DEFAULT_LEASE = timedelta(minutes=5)

# A lease this close to expiry is treated as stale and may be taken over
STEAL_WINDOW = timedelta(seconds=1)


class SyncLock:
    """In-process flag plus persisted, expiring lease."""

    def __init__(
        self,
        store: LocalStore,
        metadata: SyncMetadataStore,
        lease: timedelta = DEFAULT_LEASE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the lock.

        Args:
            store: Local store, for the acquire transaction.
            metadata: Metadata store holding the persisted lease.
            lease: Lease duration.
            clock: Source of the current time.
        """
        self._store = store
        self._metadata = metadata
        self._lease = lease
        self._clock = clock
        self._guard = threading.Lock()
        self._held = False
        self._expiry: datetime | None = None
        self._token: str | None = None
        self._timer: threading.Timer | None = None

    @property
    def is_locked(self) -> bool:
        """Whether this process holds the lock."""
        return self._held

    @property
    def token(self) -> str | None:
        """Identifies the current acquisition, for release()."""
        return self._token

    @property
    def lease(self) -> timedelta:
        return self._lease

    def is_locked_anywhere(self) -> bool:
        """Whether this or another process holds an unexpired lease."""
        if self._held:
            return True
        expiry = self._metadata.read_lock_expiry()
        return expiry is not None and expiry > self._clock()

    def acquire(self) -> bool:
        """Try to take the lock.

        Returns:
            True if the lock was taken, False if another run holds it.
        """
        with self._guard:
            if self._held:
                logger.debug("Sync lock held in this process")
                return False

            with self._store.transaction():
                now = self._clock()
                expiry = self._metadata.read_lock_expiry()
                if expiry is not None and expiry - now > STEAL_WINDOW:
                    logger.info("Sync lock held until %s", expiry.isoformat())
                    return False
                if expiry is not None and expiry > now:
                    logger.warning(
                        "Taking over sync lock about to expire at %s", expiry.isoformat()
                    )
                self._expiry = now + self._lease
                self._metadata.write_lock_expiry(self._expiry)

            self._held = True
            self._token = uuid.uuid4().hex
            self._start_timer()
        logger.debug("Sync lock acquired")
        return True

    def release(self, token: str | None = None) -> None:
        """Release the lock, persisted lease included.

        The persisted lease is left alone if another run has taken it over
        since.

        Args:
            token: The token read after acquire(). If the lock has been
                acquired again since, the call does nothing.
        """
        with self._guard:
            if token is not None and token != self._token:
                logger.warning("Ignoring release of a sync lock lease taken over since")
                return
            self._cancel_timer()
            if self._expiry is not None and self._metadata.read_lock_expiry() == self._expiry:
                self._metadata.write_lock_expiry(None)
            self._expiry = None
            self._token = None
            self._held = False
        logger.debug("Sync lock released")

    def _start_timer(self) -> None:
        self._cancel_timer()
        self._timer = threading.Timer(self._lease.total_seconds(), self._on_lease_expired)
        self._timer.daemon = True
        self._timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_lease_expired(self) -> None:
        with self._guard:
            if not self._held:
                return
            self._held = False
            self._timer = None
        logger.warning(
            "Sync lock lease expired without release after %ss",
            self._lease.total_seconds(),
        )
