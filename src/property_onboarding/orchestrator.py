"""Finalization orchestrator: turns a completed draft into a remote property.

Stages run strictly in order and each one fully settles before the next:

1. create_primary     (fatal)  create the property from kind + address
2. update_attributes  (fatal)  apply the remaining address and detail fields
3. write_rooms        (soft)   create rooms in parallel
4. upload_photos      (soft)   request write targets, then transfer bytes in batches
5. write_features     (soft)   bulk-write selected tags
6. publish            (soft)   one update with only the publication fields the user set

A fatal failure stops the attempt and leaves the draft untouched so the
user can retry. Soft failures are collected as warnings; the property
still counts as created and the draft is reset. Nothing is rolled back:
a property with missing photos is editable later, an absent one is not.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .draft_store import DraftStore
from .errors import FatalStageError, FinalizationInProgressError, InvalidIdentifierError
from .models import (
    ALLOWED_MIME_TYPES,
    Draft,
    FinalizationResult,
    ItemFailure,
    OrchestratorState,
    PendingAttachment,
    ProgressEvent,
    RemoteIds,
    StageName,
    StageOutcome,
    UploadStatus,
    UploadTarget,
    is_valid_identifier,
)
from .payloads import (
    create_attribute_update_payload,
    create_primary_address,
    create_publication_payload,
    create_room_payload,
    missing_primary_fields,
)
from .reconcile import OrphanLedger
from .resource_api import ResourceAPI
from .upload_batcher import UnitResult, UploadBatcher

logger = logging.getLogger(__name__)


# (stage, fatal) in execution order
STAGES: tuple[tuple[StageName, bool], ...] = (
    ("create_primary", True),
    ("update_attributes", True),
    ("write_rooms", False),
    ("upload_photos", False),
    ("write_features", False),
    ("publish", False),
)

ProgressListener = Callable[[ProgressEvent], Awaitable[None] | None]


@dataclass
class _Attempt:
    """Working state of one finalization attempt."""

    draft: Draft
    stages: list[StageOutcome] = field(default_factory=list)
    remote_ids: RemoteIds | None = None
    attributes_applied: bool = False
    completed: bool = False

    @property
    def primary_id(self) -> str:
        assert self.remote_ids is not None
        return self.remote_ids.primary_id


class FinalizationOrchestrator:
    """Runs the staged commit of a draft against the Resource API.

    One orchestrator guards one draft: a second finalize() while an
    attempt is running is refused before doing anything.
    """

    def __init__(
        self,
        api: ResourceAPI,
        store: DraftStore,
        upload_limit: int = 3,
        allowed_mime_types: tuple[str, ...] = ALLOWED_MIME_TYPES,
        orphans: OrphanLedger | None = None,
        on_progress: ProgressListener | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            api: Resource API client
            store: Draft Store holding the draft to finalize
            upload_limit: Concurrent byte transfers per batch
            allowed_mime_types: Attachments outside this list are never requested
            orphans: Ledger recording properties left behind by aborted attempts
            on_progress: Called with a ProgressEvent on stage and upload changes
        """
        self.api = api
        self.store = store
        self.upload_limit = upload_limit
        self.allowed_mime_types = allowed_mime_types
        self.orphans = orphans
        self.on_progress = on_progress
        self._guard = threading.Lock()
        self._state: OrchestratorState = "idle"

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._guard.locked()

    async def finalize(self) -> FinalizationResult:
        """Run all stages once and return the terminal outcome.

        Stage failures never raise; they are reported in the result.

        Raises:
            FinalizationInProgressError: If another attempt is still running
        """
        if not self._guard.acquire(blocking=False):
            logger.warning("Finalization already in progress, ignoring new request")
            raise FinalizationInProgressError("Finalization already in progress")

        self._state = "running"
        try:
            result = await self._run()
        except BaseException:
            self._state = "idle"
            raise
        finally:
            self._guard.release()

        self._state = result.outcome
        return result

    async def _run(self) -> FinalizationResult:
        attempt = _Attempt(draft=self.store.draft)
        # Identifiers from an earlier failed attempt are never reused.
        self.store.clear_remote_ids()

        try:
            for index, (name, fatal) in enumerate(STAGES):
                await self._emit(ProgressEvent("stage_started", name, index / len(STAGES)))
                logger.info(f"Stage {index + 1}/{len(STAGES)}: {name}")

                try:
                    outcome = await self._run_stage(name, attempt)
                except Exception as e:
                    detail = str(e) or type(e).__name__
                    if fatal:
                        logger.error(f"Fatal failure in {name}: {detail}")
                        attempt.stages.append(
                            StageOutcome(name, "failed_fatal", fatal=True, error=detail)
                        )
                        await self._emit(
                            ProgressEvent("stage_finished", name, (index + 1) / len(STAGES))
                        )
                        return FinalizationResult(
                            outcome="failed_fatal",
                            stages=attempt.stages,
                            error=detail,
                        )
                    logger.warning(f"{name} failed, continuing: {detail}")
                    outcome = StageOutcome(
                        name,
                        "failed_soft",
                        error=detail,
                        failures=[ItemFailure(stage=name, detail=detail)],
                    )

                outcome.fatal = fatal
                attempt.stages.append(outcome)
                await self._emit(ProgressEvent("stage_finished", name, (index + 1) / len(STAGES)))
            attempt.completed = True
        finally:
            self._release_partial(attempt)

        warnings = [failure for stage in attempt.stages for failure in stage.failures]
        result = FinalizationResult(
            outcome="completed_with_warnings" if warnings else "completed",
            stages=attempt.stages,
            remote_ids=attempt.remote_ids,
            warnings=warnings,
        )
        logger.info(
            f"Property {attempt.primary_id} created ({result.outcome}, "
            f"{result.warning_count} warning(s))"
        )
        self.store.reset()
        return result

    def _release_partial(self, attempt: _Attempt) -> None:
        """Record a property left behind by an unfinished attempt as an orphan.

        A retry always creates a new property, so anything created by an
        attempt that did not run to the end (fatal stage 2, cancellation)
        goes to the ledger for cleanup.
        """
        if attempt.remote_ids is None or attempt.completed:
            return
        if attempt.attributes_applied:
            reason = "attempt interrupted after attribute update"
        else:
            reason = "attribute update not applied"
        if self.orphans is not None:
            self.orphans.record(attempt.primary_id, reason)
        self.store.clear_remote_ids()

    async def _run_stage(self, name: StageName, attempt: _Attempt) -> StageOutcome:
        if name == "create_primary":
            return await self._create_primary(attempt)
        if name == "update_attributes":
            return await self._update_attributes(attempt)
        if name == "write_rooms":
            return await self._write_rooms(attempt)
        if name == "upload_photos":
            return await self._upload_photos(attempt)
        if name == "write_features":
            return await self._write_features(attempt)
        return await self._publish(attempt)

    # --- Stages ---

    async def _create_primary(self, attempt: _Attempt) -> StageOutcome:
        draft = attempt.draft
        missing = missing_primary_fields(draft)
        if missing:
            raise FatalStageError("create_primary", f"missing {', '.join(missing)}")

        remote_ids = await self.api.create_primary(draft.kind, create_primary_address(draft))
        # A 2xx with an empty or placeholder id is not a success.
        if remote_ids is None or not is_valid_identifier(remote_ids.primary_id):
            raise InvalidIdentifierError(
                f"property id missing from creation response: {remote_ids!r}"
            )

        attempt.remote_ids = remote_ids
        self.store.set_remote_ids(remote_ids)
        return StageOutcome("create_primary", "succeeded")

    async def _update_attributes(self, attempt: _Attempt) -> StageOutcome:
        payload = create_attribute_update_payload(attempt.draft)
        await self.api.update_primary(attempt.primary_id, payload)
        attempt.attributes_applied = True
        return StageOutcome("update_attributes", "succeeded")

    async def _write_rooms(self, attempt: _Attempt) -> StageOutcome:
        rooms = attempt.draft.rooms
        if not rooms:
            return StageOutcome("write_rooms", "skipped")

        results = await asyncio.gather(
            *(self.api.create_sub_item(attempt.primary_id, create_room_payload(r)) for r in rooms),
            return_exceptions=True,
        )

        outcome = StageOutcome("write_rooms", "succeeded", items_total=len(rooms))
        for room, result in zip(rooms, results):
            if isinstance(result, BaseException):
                detail = str(result) or type(result).__name__
                logger.warning(f"Room {room.name or room.room_type!r} not saved: {detail}")
                outcome.failures.append(
                    ItemFailure(stage="write_rooms", item=room.room_id, detail=detail)
                )
                outcome.item_statuses[room.room_id] = "failed"
            else:
                outcome.items_succeeded += 1
                outcome.item_statuses[room.room_id] = "succeeded"

        if outcome.failures:
            outcome.status = "failed_soft"
            outcome.error = f"{len(outcome.failures)} of {len(rooms)} room(s) not saved"
        return outcome

    async def _upload_photos(self, attempt: _Attempt) -> StageOutcome:
        draft_photos = attempt.draft.photos
        # Primary first: the service makes the first uploaded photo the cover.
        photos = sorted(
            (p for p in draft_photos if not p.is_confirmed),
            key=lambda p: not p.is_primary,
        )
        if not photos:
            return StageOutcome("upload_photos", "skipped")

        outcome = StageOutcome("upload_photos", "succeeded", items_total=len(photos))
        position = {p.attachment_id: i for i, p in enumerate(draft_photos)}

        def fail(photo: PendingAttachment, detail: str) -> None:
            logger.warning(f"Photo {position[photo.attachment_id] + 1} skipped: {detail}")
            photo.upload_status = "failed"
            outcome.item_statuses[photo.attachment_id] = "failed"
            outcome.failures.append(
                ItemFailure(stage="upload_photos", item=photo.attachment_id, detail=detail)
            )

        eligible: list[PendingAttachment] = []
        for photo in photos:
            outcome.item_statuses[photo.attachment_id] = photo.upload_status
            if not photo.has_content:
                fail(photo, "local file is no longer available")
            elif photo.file.mime_type not in self.allowed_mime_types:
                fail(photo, f"unsupported type {photo.file.mime_type}")
            else:
                eligible.append(photo)

        targets = await asyncio.gather(
            *(
                self.api.request_upload_target(
                    attempt.primary_id, p.file.name, p.file.mime_type, p.tag
                )
                for p in eligible
            ),
            return_exceptions=True,
        )

        transfers: list[tuple[PendingAttachment, UploadTarget]] = []
        for photo, target in zip(eligible, targets):
            if isinstance(target, BaseException):
                fail(photo, f"no upload target: {str(target) or type(target).__name__}")
            elif not target.url.startswith(("http://", "https://")):
                fail(photo, f"invalid upload target {target.url!r}")
            else:
                transfers.append((photo, target))

        if transfers:
            report = await UploadBatcher(self.upload_limit).run(
                [self._transfer_unit(photo, target) for photo, target in transfers],
                on_progress=self._upload_progress(transfers, outcome, position),
            )
            for (photo, target), unit in zip(transfers, report.results):
                if unit.status == "succeeded":
                    photo.confirm(target.key or photo.attachment_id)
                    outcome.item_statuses[photo.attachment_id] = "succeeded"
                    outcome.items_succeeded += 1
                else:
                    fail(photo, f"transfer failed: {unit.error}")

        if outcome.failures:
            outcome.status = "failed_soft"
            outcome.error = f"{len(outcome.failures)} of {len(photos)} photo(s) not uploaded"
        return outcome

    def _transfer_unit(
        self, photo: PendingAttachment, target: UploadTarget
    ) -> Callable[[], Awaitable[str]]:
        async def unit() -> str:
            photo.upload_status = "in_flight"
            content = await photo.file.read_bytes()
            await self.api.transfer_bytes(target.url, content, photo.file.mime_type)
            return target.key

        return unit

    def _upload_progress(
        self,
        transfers: list[tuple[PendingAttachment, UploadTarget]],
        outcome: StageOutcome,
        position: dict[str, int],
    ) -> Callable[[int, UnitResult], Awaitable[None]]:
        stage_index = [name for name, _ in STAGES].index("upload_photos")

        async def on_unit(index: int, result: UnitResult) -> None:
            photo, _ = transfers[index]
            status: UploadStatus = "succeeded" if result.status == "succeeded" else "failed"
            photo.upload_status = status
            outcome.item_statuses[photo.attachment_id] = status
            settled = sum(1 for s in outcome.item_statuses.values() if s in ("succeeded", "failed"))
            await self._emit(
                ProgressEvent(
                    "item_settled",
                    "upload_photos",
                    (stage_index + settled / outcome.items_total) / len(STAGES),
                    item_index=position[photo.attachment_id],
                    item_status=status,
                    item_id=photo.attachment_id,
                )
            )

        return on_unit

    async def _write_features(self, attempt: _Attempt) -> StageOutcome:
        features = attempt.draft.features
        if not features:
            return StageOutcome("write_features", "skipped")
        await self.api.bulk_write_tags(attempt.primary_id, features)
        return StageOutcome(
            "write_features", "succeeded", items_total=len(features), items_succeeded=len(features)
        )

    async def _publish(self, attempt: _Attempt) -> StageOutcome:
        payload = create_publication_payload(attempt.draft)
        if not payload:
            return StageOutcome("publish", "skipped")
        await self.api.update_primary(attempt.primary_id, payload)
        return StageOutcome("publish", "succeeded")

    async def _emit(self, event: ProgressEvent) -> None:
        if self.on_progress is None:
            return
        try:
            outcome = self.on_progress(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            # Never let progress reporting change the outcome.
            logger.error(f"Progress listener error: {e}")
