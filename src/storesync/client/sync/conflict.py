"""Conflict detection and resolution for incoming remote changes.

A remote change conflicts with local state when the local record:
- has a pending or syncing journal entry (an unpushed local edit), or
- was updated after the last successful sync boundary.

No local record means no conflict: the remote version is adopted.

Resolution by strategy:
| Strategy    | Action                                              |
|-------------|-----------------------------------------------------|
| server_wins | Apply the remote change                             |
| client_wins | Skip it, keep the local record                      |
| manual      | Skip it, store both versions as a conflict entry    |

A remote update carrying a deleted_at marker is handled as a delete, and
this reclassification happens before conflicts are evaluated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from storesync.core.timeutil import EPOCH, parse_ts
from storesync.core.types import ChangeType, ConflictStrategy

if TYPE_CHECKING:
    from storesync.client.api import RemoteChange
    from storesync.client.sync.journal import ChangeJournal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictDecision:
    """Whether to apply a remote change, and why."""

    apply: bool
    conflict: bool
    reason: str


class ConflictResolver:
    """Decides which side wins for each incoming remote change."""

    def __init__(self, journal: ChangeJournal) -> None:
        self._journal = journal

    @staticmethod
    def effective_change_type(change: RemoteChange) -> ChangeType:
        """Change type after soft-delete reclassification."""
        if change.change_type is ChangeType.UPDATE and change.data.get("deleted_at"):
            return ChangeType.DELETE
        return change.change_type

    def has_conflict(
        self,
        table: str,
        local_id: str,
        local_record: dict[str, Any] | None,
        last_sync_at: datetime | None,
    ) -> bool:
        if local_record is None:
            return False
        if self._journal.has_open_entry(table, local_id):
            return True
        local_updated_at = parse_ts(local_record.get("updated_at"))
        if local_updated_at is None:
            return False
        return local_updated_at > (last_sync_at or EPOCH)

    def resolve(
        self,
        change: RemoteChange,
        local_id: str,
        local_record: dict[str, Any] | None,
        last_sync_at: datetime | None,
        strategy: ConflictStrategy,
    ) -> ConflictDecision:
        """Decide what to do with a remote change.

        Args:
            change: The remote change.
            local_id: Local id of the record it targets.
            local_record: Current local record, if any.
            last_sync_at: Last successful sync boundary.
            strategy: Configured conflict strategy.

        Returns:
            The decision. With the manual strategy, the conflict entry has
            already been stored when this returns.
        """
        if not self.has_conflict(change.table, local_id, local_record, last_sync_at):
            return ConflictDecision(apply=True, conflict=False, reason="no conflict")

        if strategy is ConflictStrategy.SERVER_WINS:
            logger.info("Conflict on %s/%s: server wins", change.table, local_id)
            return ConflictDecision(apply=True, conflict=True, reason="server wins")

        if strategy is ConflictStrategy.CLIENT_WINS:
            logger.info(
                "Conflict on %s/%s: client wins, remote change skipped", change.table, local_id
            )
            return ConflictDecision(apply=False, conflict=True, reason="client wins")

        self._journal.enqueue_conflict(
            change.table,
            local_id,
            local_record,
            change.data,
            self.effective_change_type(change),
        )
        return ConflictDecision(apply=False, conflict=True, reason="manual resolution required")
