"""Wiring for one onboarding session.

An OnboardingSession bundles the collaborators a UI caller needs: the
Draft Store, the step graph over it, the Resource API client and the
finalization orchestrator, all built from one OnboardingConfig.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .config import OnboardingConfig
from .draft_store import DraftStore
from .orchestrator import FinalizationOrchestrator, ProgressListener
from .reconcile import OrphanLedger
from .resource_api import HttpResourceAPI, ResourceAPI
from .snapshot_store import SQLiteSnapshotStore, SnapshotStore
from .step_graph import StepGraph


@dataclass
class OnboardingSession:
    """Collaborators for one user's onboarding flow."""

    config: OnboardingConfig
    snapshots: SnapshotStore
    store: DraftStore
    graph: StepGraph
    api: ResourceAPI
    orphans: OrphanLedger
    orchestrator: FinalizationOrchestrator

    _owned_api: bool = field(default=False, repr=False)
    _owned_snapshots: bool = field(default=False, repr=False)

    @classmethod
    def open(
        cls,
        config: OnboardingConfig,
        snapshots: SnapshotStore | None = None,
        api: ResourceAPI | None = None,
        on_progress: ProgressListener | None = None,
    ) -> "OnboardingSession":
        """Build a session, restoring any persisted draft.

        Args:
            config: Loaded configuration
            snapshots: Snapshot store; a SQLite file at config.snapshot_path if omitted
            api: Resource API; an HttpResourceAPI from config.api if omitted
            on_progress: Listener for finalization progress events
        """
        owned_snapshots = snapshots is None
        if snapshots is None:
            snapshots = SQLiteSnapshotStore(config.snapshot_path)

        owned_api = api is None
        if api is None:
            api = HttpResourceAPI(
                base_url=config.api.base_url,
                timeout=config.api.timeout,
                headers=config.api.headers,
                allowed_mime_types=config.upload.allowed_mime_types,
            )

        store = DraftStore(
            snapshots,
            key=config.draft_key,
            allowed_mime_types=config.upload.allowed_mime_types,
            max_attachments=config.upload.max_attachments,
            max_file_size=config.upload.max_file_size,
            default_tag=config.upload.default_tag,
        )
        orphans = OrphanLedger(snapshots)
        orchestrator = FinalizationOrchestrator(
            api,
            store,
            upload_limit=config.upload.concurrency,
            allowed_mime_types=config.upload.allowed_mime_types,
            orphans=orphans,
            on_progress=on_progress,
        )

        return cls(
            config=config,
            snapshots=snapshots,
            store=store,
            graph=StepGraph(store),
            api=api,
            orphans=orphans,
            orchestrator=orchestrator,
            _owned_api=owned_api,
            _owned_snapshots=owned_snapshots,
        )

    def abandon(self) -> None:
        """Drop the current draft (explicit abandonment)."""
        self.store.reset()

    async def close(self) -> None:
        """Release the API client and the snapshot store if this session created them."""
        if self._owned_api and isinstance(self.api, HttpResourceAPI):
            await self.api.close()
        if self._owned_snapshots and isinstance(self.snapshots, SQLiteSnapshotStore):
            self.snapshots.close()
