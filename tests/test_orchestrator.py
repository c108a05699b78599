"""Tests for the finalization orchestrator - with a mocked Resource API."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from property_onboarding.draft_store import DraftStore
from property_onboarding.errors import FinalizationInProgressError, ResourceAPIError
from property_onboarding.models import LocalFile, RemoteIds, UploadTarget
from property_onboarding.orchestrator import STAGES, FinalizationOrchestrator
from property_onboarding.reconcile import OrphanLedger
from property_onboarding.resource_api import HttpResourceAPI
from property_onboarding.snapshot_store import MemorySnapshotStore


FULL_ADDRESS = {
    "line1": "12 Park Street",
    "complement": "Building B",
    "postal_code": "69001",
    "city": "Lyon",
    "department": "Rhone",
}


def _photo(name: str) -> LocalFile:
    return LocalFile(name=name, mime_type="image/jpeg", content=f"bytes of {name}".encode())


@pytest.fixture
def snapshots():
    return MemorySnapshotStore()


@pytest.fixture
def store(snapshots):
    return DraftStore(snapshots)


@pytest.fixture
def orphans(snapshots):
    return OrphanLedger(snapshots)


@pytest.fixture
def mock_api():
    """Create a Resource API mock where every call succeeds."""
    api = AsyncMock(spec=HttpResourceAPI)
    api.create_primary.return_value = RemoteIds("prop-1", "unit-1")
    api.update_primary.return_value = None
    api.create_sub_item.side_effect = lambda primary_id, payload: f"room-{payload['sort_order']}"
    api.request_upload_target.side_effect = lambda primary_id, name, mime, tag: UploadTarget(
        url=f"https://storage.example.com/{name}", key=f"photos/{name}"
    )
    api.transfer_bytes.return_value = None
    api.bulk_write_tags.return_value = None
    return api


@pytest.fixture
def orchestrator(mock_api, store, orphans):
    return FinalizationOrchestrator(mock_api, store, orphans=orphans)


def fill_scenario(store: DraftStore, rooms: int = 2, photos: int = 4) -> None:
    """FULL-mode apartment: address, rooms, photos (#2 primary), 3 tags, public."""
    store.set_position("full", "summary")
    store.patch({
        "kind": "APARTMENT",
        "address": dict(FULL_ADDRESS),
        "details": {"surface_m2": 48, "rooms_count": 2, "floor": 0, "elevator": False},
        "features": ["balcony", "elevator", "cellar"],
        "publication": {"visibility": "public"},
    })
    for i in range(rooms):
        store.add_room("bedroom", name=f"Bedroom {i + 1}")
    for i in range(photos):
        store.add_attachment(_photo(f"photo-{i + 1}.jpg"), primary=i == 1)


class TestSuccessfulFinalization:
    """Test the happy path."""

    @pytest.mark.asyncio
    async def test_full_scenario_completes(self, orchestrator, mock_api, store):
        """All six stages succeed and the draft is reset."""
        fill_scenario(store)
        photos = store.draft.photos

        result = await orchestrator.finalize()

        assert result.outcome == "completed"
        assert len(result.stages) == 6
        assert [s.stage for s in result.stages] == [name for name, _ in STAGES]
        assert all(s.status == "succeeded" for s in result.stages)
        assert result.remote_ids == RemoteIds("prop-1", "unit-1")
        assert result.warning_count == 0
        assert result.message == "Property created and fully configured."

        assert mock_api.create_sub_item.await_count == 2
        assert mock_api.transfer_bytes.await_count == 4
        mock_api.bulk_write_tags.assert_awaited_once_with(
            "prop-1", ["balcony", "elevator", "cellar"]
        )

        assert store.draft.fields == {}
        assert store.draft.remote_ids is None
        assert store.draft.current_step == "type"
        assert orchestrator.state == "completed"
        assert not orchestrator.is_running

        for photo in photos:
            assert photo.is_confirmed
            assert photo.file.released

    @pytest.mark.asyncio
    async def test_create_sends_minimal_fields(self, orchestrator, mock_api, store):
        fill_scenario(store)

        await orchestrator.finalize()

        mock_api.create_primary.assert_awaited_once_with(
            "APARTMENT",
            {"line1": "12 Park Street", "city": "Lyon", "postal_code": "69001", "country_code": "FR"},
        )

    @pytest.mark.asyncio
    async def test_attribute_update_payload(self, orchestrator, mock_api, store):
        fill_scenario(store)

        await orchestrator.finalize()

        primary_id, payload = mock_api.update_primary.await_args_list[0].args
        assert primary_id == "prop-1"
        assert payload["address_line1"] == "12 Park Street"
        assert payload["address_complement"] == "Building B"
        assert payload["surface_m2"] == 48
        # Zero and False are answers, not blanks
        assert payload["floor"] == 0
        assert payload["elevator"] is False
        assert "dpe_energy_class" not in payload

    @pytest.mark.asyncio
    async def test_publication_sends_only_touched_fields(self, orchestrator, mock_api, store):
        fill_scenario(store)

        await orchestrator.finalize()

        assert mock_api.update_primary.await_args_list[1].args == ("prop-1", {"visibility": "public"})

    @pytest.mark.asyncio
    async def test_primary_photo_uploaded_first(self, orchestrator, mock_api, store):
        fill_scenario(store)

        await orchestrator.finalize()

        first_request = mock_api.request_upload_target.call_args_list[0]
        assert first_request.args[1] == "photo-2.jpg"
        assert first_request.args[3] == "overview"

    @pytest.mark.asyncio
    async def test_empty_optional_stages_skipped(self, orchestrator, mock_api, store):
        """A FAST-style draft with only kind and address completes with skips."""
        store.patch({"kind": "PARKING", "address": dict(FULL_ADDRESS)})

        result = await orchestrator.finalize()

        assert result.outcome == "completed"
        assert [s.status for s in result.stages] == [
            "succeeded", "succeeded", "skipped", "skipped", "skipped", "skipped"
        ]
        mock_api.create_sub_item.assert_not_awaited()
        mock_api.request_upload_target.assert_not_awaited()
        mock_api.bulk_write_tags.assert_not_awaited()
        assert mock_api.update_primary.await_count == 1

    @pytest.mark.asyncio
    async def test_photo_read_from_disk(self, orchestrator, mock_api, store, tmp_path: Path):
        path = tmp_path / "front.png"
        path.write_bytes(b"\x89PNG data")
        store.patch({"kind": "HOUSE", "address": dict(FULL_ADDRESS)})
        store.add_attachment(LocalFile(name="front.png", mime_type="image/png", path=path))

        result = await orchestrator.finalize()

        assert result.outcome == "completed"
        mock_api.transfer_bytes.assert_awaited_once_with(
            "https://storage.example.com/front.png", b"\x89PNG data", "image/png"
        )

    @pytest.mark.asyncio
    async def test_progress_events(self, mock_api, store):
        events = []
        orchestrator = FinalizationOrchestrator(mock_api, store, on_progress=events.append)
        fill_scenario(store, photos=3)

        await orchestrator.finalize()

        assert events[0].kind == "stage_started"
        assert events[0].stage == "create_primary"
        assert events[-1].kind == "stage_finished"
        assert events[-1].stage == "publish"
        assert events[-1].fraction == 1.0

        settled = [e for e in events if e.kind == "item_settled"]
        assert len(settled) == 3
        assert sorted(e.item_index for e in settled) == [0, 1, 2]
        assert all(e.item_status == "succeeded" for e in settled)
        assert [e.fraction for e in events] == sorted(e.fraction for e in events)

    @pytest.mark.asyncio
    async def test_item_index_follows_draft_order(self, mock_api, store):
        """With the primary photo last, its progress still points at its draft slot."""
        events = []
        orchestrator = FinalizationOrchestrator(mock_api, store, on_progress=events.append)
        fill_scenario(store, photos=3)
        store.set_primary_attachment(store.draft.photos[2].attachment_id)
        ids = [p.attachment_id for p in store.draft.photos]

        await orchestrator.finalize()

        settled = [e for e in events if e.kind == "item_settled"]
        assert [e.item_id for e in settled][0] == ids[2]
        for event in settled:
            assert ids[event.item_index] == event.item_id
        primary_event = next(e for e in settled if e.item_id == ids[2])
        assert primary_event.item_index == 2


class TestFatalFailures:
    """Test stage 1/2 failures."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_ids", [
        RemoteIds(""),
        RemoteIds("undefined"),
        RemoteIds("  "),
        None,
    ])
    async def test_sentinel_id_is_fatal(self, orchestrator, mock_api, store, bad_ids):
        """A 'successful' creation without a usable id stops everything."""
        fill_scenario(store)
        mock_api.create_primary.return_value = bad_ids

        result = await orchestrator.finalize()

        assert result.outcome == "failed_fatal"
        assert len(result.stages) == 1
        assert result.stages[0].status == "failed_fatal"
        mock_api.update_primary.assert_not_awaited()
        mock_api.create_sub_item.assert_not_awaited()
        mock_api.request_upload_target.assert_not_awaited()
        mock_api.transfer_bytes.assert_not_awaited()
        mock_api.bulk_write_tags.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_required_fields(self, orchestrator, mock_api, store):
        """Without kind and full address nothing is sent."""
        store.patch({"address": {"line1": "12 Park Street"}})

        result = await orchestrator.finalize()

        assert result.outcome == "failed_fatal"
        assert "kind" in result.error
        assert "address.city" in result.error
        mock_api.create_primary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_error_leaves_draft_intact(self, orchestrator, mock_api, store):
        fill_scenario(store)
        mock_api.create_primary.side_effect = ResourceAPIError("POST /properties returned 500", 500)

        result = await orchestrator.finalize()

        assert result.outcome == "failed_fatal"
        assert result.message.startswith("Property not created")
        assert store.draft.kind == "APARTMENT"
        assert len(store.draft.photos) == 4
        assert store.draft.current_step == "summary"
        assert orchestrator.state == "failed_fatal"
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_update_failure_records_orphan(self, orchestrator, mock_api, store, orphans):
        """Stage 2 failing leaves the stage-1 property in the orphan ledger."""
        fill_scenario(store)
        mock_api.update_primary.side_effect = ResourceAPIError("PATCH returned 422", 422)

        result = await orchestrator.finalize()

        assert result.outcome == "failed_fatal"
        assert [s.status for s in result.stages] == ["succeeded", "failed_fatal"]
        assert "prop-1" in orphans.entries()
        assert store.draft.remote_ids is None
        mock_api.create_sub_item.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_after_fatal_starts_over(self, orchestrator, mock_api, store):
        """The guard is released and a retry runs from stage 1 with a fresh id."""
        fill_scenario(store)
        mock_api.update_primary.side_effect = [ResourceAPIError("timeout"), None, None]
        mock_api.create_primary.side_effect = [RemoteIds("prop-1"), RemoteIds("prop-2")]

        first = await orchestrator.finalize()
        second = await orchestrator.finalize()

        assert first.outcome == "failed_fatal"
        assert second.outcome == "completed"
        assert second.remote_ids.primary_id == "prop-2"
        assert mock_api.create_primary.await_count == 2

    @pytest.mark.asyncio
    async def test_cancellation_after_create_records_orphan(self, orchestrator, mock_api, store, orphans):
        fill_scenario(store)
        blocked = asyncio.Event()

        async def hang(primary_id, attributes):
            blocked.set()
            await asyncio.Event().wait()

        mock_api.update_primary.side_effect = hang

        task = asyncio.create_task(orchestrator.finalize())
        await blocked.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert "prop-1" in orphans.entries()
        assert not orchestrator.is_running
        assert orchestrator.state == "idle"
        assert store.draft.kind == "APARTMENT"

    @pytest.mark.asyncio
    async def test_cancellation_after_attributes_records_orphan(
        self, orchestrator, mock_api, store, orphans
    ):
        """An attempt cancelled mid-upload leaves its property in the ledger."""
        fill_scenario(store)
        blocked = asyncio.Event()

        async def hang(url, content, mime_type):
            blocked.set()
            await asyncio.Event().wait()

        mock_api.transfer_bytes.side_effect = hang

        task = asyncio.create_task(orchestrator.finalize())
        await blocked.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orphans.entries()["prop-1"]["reason"] == "attempt interrupted after attribute update"
        assert store.draft.remote_ids is None
        assert not orchestrator.is_running
        assert store.draft.kind == "APARTMENT"

    @pytest.mark.asyncio
    async def test_completed_attempt_records_no_orphan(self, orchestrator, store, orphans):
        fill_scenario(store)

        await orchestrator.finalize()

        assert orphans.entries() == {}


class TestSoftFailures:
    """Test stage 3-6 failures."""

    @pytest.mark.asyncio
    async def test_partial_room_and_photo_failures(self, orchestrator, mock_api, store):
        """2 of 5 rooms and 1 of 3 photos fail: 3 warnings, later stages still run."""
        fill_scenario(store, rooms=5, photos=3)

        def create_room(primary_id, payload):
            if payload["sort_order"] in (2, 4):
                raise ResourceAPIError("room rejected", 400)
            return f"room-{payload['sort_order']}"

        async def transfer(url, content, mime_type):
            if url.endswith("photo-3.jpg"):
                raise ResourceAPIError("Transfer rejected with status 403", 403)

        mock_api.create_sub_item.side_effect = create_room
        mock_api.transfer_bytes.side_effect = transfer

        result = await orchestrator.finalize()

        assert result.outcome == "completed_with_warnings"
        assert result.warning_count == 3
        assert result.stage("write_rooms").status == "failed_soft"
        assert result.stage("write_rooms").items_succeeded == 3
        assert result.stage("upload_photos").status == "failed_soft"
        assert result.stage("upload_photos").items_succeeded == 2
        mock_api.bulk_write_tags.assert_awaited_once()
        assert mock_api.update_primary.await_count == 2
        assert store.draft.fields == {}

    @pytest.mark.asyncio
    async def test_upload_target_failure_excludes_one_photo(self, orchestrator, mock_api, store):
        """A descriptor failure for photo #2 only drops photo #2 from the transfers."""
        fill_scenario(store)
        store.set_primary_attachment(store.draft.photos[0].attachment_id)

        def target(primary_id, name, mime, tag):
            if name == "photo-2.jpg":
                raise ResourceAPIError("upload-url returned 500", 500)
            return UploadTarget(url=f"https://storage.example.com/{name}", key=name)

        mock_api.request_upload_target.side_effect = target

        result = await orchestrator.finalize()

        assert result.outcome == "completed_with_warnings"
        assert result.warning_count >= 1
        assert mock_api.transfer_bytes.await_count == 3
        transferred = {c.args[0] for c in mock_api.transfer_bytes.await_args_list}
        assert "https://storage.example.com/photo-2.jpg" not in transferred

        upload = result.stage("upload_photos")
        assert upload.status == "failed_soft"
        assert upload.items_succeeded == 3
        assert list(upload.item_statuses.values()).count("failed") == 1
        assert "manual follow-up" in result.message

    @pytest.mark.asyncio
    async def test_invalid_upload_target_is_soft(self, orchestrator, mock_api, store):
        fill_scenario(store, photos=1)
        mock_api.request_upload_target.side_effect = None
        mock_api.request_upload_target.return_value = UploadTarget(url="/relative/path")

        result = await orchestrator.finalize()

        assert result.outcome == "completed_with_warnings"
        mock_api.transfer_bytes.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_released_attachment_excluded(self, orchestrator, mock_api, store):
        fill_scenario(store, photos=2)
        store.draft.photos[0].release()

        result = await orchestrator.finalize()

        assert result.outcome == "completed_with_warnings"
        assert mock_api.request_upload_target.await_count == 1
        assert result.warnings[0].detail == "local file is no longer available"

    @pytest.mark.asyncio
    async def test_total_upload_failure_is_still_soft(self, orchestrator, mock_api, store):
        fill_scenario(store)
        mock_api.transfer_bytes.side_effect = ResourceAPIError("storage down")

        result = await orchestrator.finalize()

        assert result.outcome == "completed_with_warnings"
        assert result.warning_count == 4
        assert result.created

    @pytest.mark.asyncio
    async def test_tag_and_publish_failures(self, orchestrator, mock_api, store):
        fill_scenario(store, rooms=0, photos=0)
        mock_api.bulk_write_tags.side_effect = ResourceAPIError("features/bulk returned 500", 500)
        mock_api.update_primary.side_effect = [None, ResourceAPIError("PATCH returned 500", 500)]

        result = await orchestrator.finalize()

        assert result.outcome == "completed_with_warnings"
        assert result.warning_count == 2
        assert result.stage("write_features").status == "failed_soft"
        assert result.stage("publish").status == "failed_soft"
        assert result.stage("publish").error == "PATCH returned 500"


class TestSingleFlightGuard:
    """Test double-submit protection."""

    @pytest.mark.asyncio
    async def test_second_invocation_rejected_without_calls(self, orchestrator, mock_api, store):
        fill_scenario(store)
        gate = asyncio.Event()

        async def slow_create(kind, address):
            await gate.wait()
            return RemoteIds("prop-1")

        mock_api.create_primary.side_effect = slow_create

        first = asyncio.create_task(orchestrator.finalize())
        await asyncio.sleep(0)
        assert orchestrator.is_running
        assert orchestrator.state == "running"
        calls_before = len(mock_api.mock_calls)

        with pytest.raises(FinalizationInProgressError):
            await orchestrator.finalize()

        assert len(mock_api.mock_calls) == calls_before

        gate.set()
        result = await first

        assert result.outcome == "completed"
        assert mock_api.create_primary.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_gather_runs_once(self, orchestrator, mock_api, store):
        fill_scenario(store)

        async def create(kind, address):
            await asyncio.sleep(0.01)
            return RemoteIds("prop-1")

        mock_api.create_primary.side_effect = create

        results = await asyncio.gather(
            orchestrator.finalize(), orchestrator.finalize(), return_exceptions=True
        )

        assert sum(isinstance(r, FinalizationInProgressError) for r in results) == 1
        assert mock_api.create_primary.await_count == 1
