"""Orphaned property tracking and cleanup.

A finalization attempt that created the property but did not get through
the full attribute update leaves a minimally-populated property behind.
Retries never reuse it, so its id is written to the orphan ledger and a
later reconcile run deletes it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .errors import ResourceAPIError

if TYPE_CHECKING:
    from .resource_api import ResourceAPI
    from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

ORPHANS_KEY = "orphaned-properties"


class OrphanLedger:
    """Persistent list of property ids awaiting deletion."""

    def __init__(self, snapshots: "SnapshotStore", key: str = ORPHANS_KEY):
        self.snapshots = snapshots
        self.key = key

    def entries(self) -> dict[str, dict]:
        """Return recorded orphans keyed by primary id."""
        return dict(self.snapshots.get(self.key) or {})

    def record(self, primary_id: str, reason: str) -> None:
        entries = self.entries()
        entries[primary_id] = {
            "reason": reason,
            "recorded_at": datetime.now(UTC).isoformat(),
        }
        self.snapshots.put(self.key, entries)
        logger.warning(f"Recorded orphaned property {primary_id}: {reason}")

    def discard(self, primary_id: str) -> None:
        entries = self.entries()
        if entries.pop(primary_id, None) is not None:
            self.snapshots.put(self.key, entries)

    def __len__(self) -> int:
        return len(self.entries())


@dataclass
class ReconcileReport:
    """Result of one reconcile pass."""

    deleted: list[str] = field(default_factory=list)
    already_gone: list[str] = field(default_factory=list)
    kept: dict[str, str] = field(default_factory=dict)


async def reconcile_orphans(api: "ResourceAPI", ledger: OrphanLedger) -> ReconcileReport:
    """Delete every recorded orphan, keeping the ones that could not be removed.

    Args:
        api: Resource API used to delete the properties
        ledger: Ledger listing the orphaned ids

    Returns:
        Which ids were deleted, already gone, or kept for the next run
    """
    report = ReconcileReport()

    for primary_id in ledger.entries():
        try:
            await api.delete_primary(primary_id)
        except ResourceAPIError as e:
            if e.status_code == 404:
                report.already_gone.append(primary_id)
                ledger.discard(primary_id)
            else:
                report.kept[primary_id] = e.detail
                logger.warning(f"Could not delete orphaned property {primary_id}: {e.detail}")
            continue

        report.deleted.append(primary_id)
        ledger.discard(primary_id)
        logger.info(f"Deleted orphaned property {primary_id}")

    return report
