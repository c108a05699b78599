"""Data models for the property onboarding draft and its finalization."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

import aiofiles


# Type aliases for modes, steps and statuses
WizardMode = Literal["fast", "full"]

StepId = Literal[
    "type",
    "address",
    "details",
    "rooms",
    "photos",
    "features",
    "publish",
    "summary",
]

UploadStatus = Literal["not_started", "in_flight", "succeeded", "failed"]

StageName = Literal[
    "create_primary",
    "update_attributes",
    "write_rooms",
    "upload_photos",
    "write_features",
    "publish",
]

StageStatus = Literal["skipped", "succeeded", "failed_soft", "failed_fatal"]

FinalizationOutcome = Literal["completed", "completed_with_warnings", "failed_fatal"]

OrchestratorState = Literal[
    "idle",
    "running",
    "completed",
    "completed_with_warnings",
    "failed_fatal",
]

ProgressKind = Literal["stage_started", "stage_finished", "item_settled"]


DEFAULT_MODE: WizardMode = "full"

# FAST is an ordered subset of FULL; a step id never repeats within a sequence.
STEP_SEQUENCES: dict[str, tuple[StepId, ...]] = {
    "full": (
        "type",
        "address",
        "details",
        "rooms",
        "photos",
        "features",
        "publish",
        "summary",
    ),
    "fast": ("type", "address", "photos", "summary"),
}

PROPERTY_KINDS = (
    "APARTMENT",
    "HOUSE",
    "STUDIO",
    "COLOCATION",
    "PARKING",
    "BOX",
    "RETAIL",
    "OFFICE",
    "WAREHOUSE",
    "MIXED",
)

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")
DEFAULT_ATTACHMENT_TAG = "overview"
MAX_ATTACHMENTS = 20
MAX_FILE_SIZE = 10 * 1024 * 1024

SNAPSHOT_VERSION = 1

# Draft field keys
KIND = "kind"
ADDRESS = "address"
DETAILS = "details"
ROOMS = "rooms"
PHOTOS = "photos"
FEATURES = "features"
PUBLICATION = "publication"

# Identifiers some backends hand back instead of failing outright
INVALID_IDENTIFIERS = frozenset({"", "undefined", "null", "none"})


def step_sequence(mode: str) -> tuple[StepId, ...]:
    """Return the ordered step sequence for a wizard mode.

    Raises:
        ValueError: If the mode is unknown
    """
    try:
        return STEP_SEQUENCES[mode]
    except KeyError:
        raise ValueError(f"Unknown wizard mode: {mode!r}") from None


def is_valid_identifier(value: Any) -> bool:
    """Check that a remote identifier is present and not a placeholder."""
    if value is None:
        return False
    return str(value).strip().lower() not in INVALID_IDENTIFIERS


@dataclass
class Room:
    """A sub-item of the property (a room), in display order."""

    room_type: str
    name: str | None = None
    is_private: bool = False
    sort_order: int = 0
    room_id: str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "room_id": self.room_id,
            "room_type": self.room_type,
            "name": self.name,
            "is_private": self.is_private,
            "sort_order": self.sort_order,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Room":
        """Create from dictionary."""
        return cls(
            room_id=data.get("room_id") or uuid4().hex,
            room_type=data["room_type"],
            name=data.get("name"),
            is_private=data.get("is_private", False),
            sort_order=data.get("sort_order", 0),
        )


# (room_type, name) pairs for the quick layouts offered in the rooms step
ROOM_TEMPLATES: dict[str, tuple[tuple[str, str], ...]] = {
    "studio": (
        ("living_room", "Living room"),
        ("kitchen", "Kitchen"),
        ("bathroom", "Bathroom"),
        ("wc", "WC"),
    ),
    "t2": (
        ("living_room", "Living room"),
        ("bedroom", "Bedroom 1"),
        ("kitchen", "Kitchen"),
        ("bathroom", "Bathroom"),
        ("wc", "WC"),
    ),
    "t3": (
        ("living_room", "Living room"),
        ("bedroom", "Bedroom 1"),
        ("bedroom", "Bedroom 2"),
        ("kitchen", "Kitchen"),
        ("bathroom", "Bathroom"),
        ("wc", "WC"),
    ),
    "t4": (
        ("living_room", "Living room"),
        ("bedroom", "Bedroom 1"),
        ("bedroom", "Bedroom 2"),
        ("bedroom", "Bedroom 3"),
        ("kitchen", "Kitchen"),
        ("bathroom", "Bathroom"),
        ("wc", "WC"),
    ),
}


@dataclass
class LocalFile:
    """A file held on the client, either on disk or in memory."""

    name: str
    mime_type: str
    path: Path | None = None
    content: bytes | None = None
    released: bool = False

    @property
    def size(self) -> int:
        if self.content is not None:
            return len(self.content)
        if self.path is not None and self.path.exists():
            return self.path.stat().st_size
        return 0

    async def read_bytes(self) -> bytes:
        """Read the file content.

        Raises:
            FileNotFoundError: If the handle was released or never had content
        """
        if self.content is not None:
            return self.content
        if self.path is not None:
            async with aiofiles.open(self.path, "rb") as f:
                return await f.read()
        raise FileNotFoundError(f"No local content for {self.name}")

    def release(self) -> None:
        """Drop the local handle. Name and mime type are kept for display."""
        self.content = None
        self.path = None
        self.released = True


@dataclass(frozen=True)
class LocalOnly:
    """Attachment exists only on the client."""


@dataclass(frozen=True)
class Confirmed:
    """Attachment has a confirmed remote counterpart."""

    remote_key: str


@dataclass
class PendingAttachment:
    """A file the user added to the draft, before and after upload."""

    file: LocalFile | None
    is_primary: bool = False
    tag: str = DEFAULT_ATTACHMENT_TAG
    upload_status: UploadStatus = "not_started"
    remote: LocalOnly | Confirmed = field(default_factory=LocalOnly)
    attachment_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def is_confirmed(self) -> bool:
        return isinstance(self.remote, Confirmed)

    @property
    def has_content(self) -> bool:
        return self.file is not None and not self.file.released

    def confirm(self, remote_key: str) -> None:
        """Mark the upload as confirmed and release the local handle."""
        self.remote = Confirmed(remote_key)
        self.upload_status = "succeeded"
        self.release()

    def release(self) -> None:
        if self.file is not None:
            self.file.release()


@dataclass(frozen=True)
class RemoteIds:
    """Identifiers assigned once the primary resource exists remotely."""

    primary_id: str
    secondary_id: str | None = None


@dataclass(frozen=True)
class UploadTarget:
    """Write target handed out by the API for one attachment."""

    url: str
    key: str = ""


@dataclass
class Draft:
    """The accumulating representation of the property being created."""

    mode: WizardMode = DEFAULT_MODE
    current_step: StepId = STEP_SEQUENCES[DEFAULT_MODE][0]
    fields: dict[str, Any] = field(default_factory=dict)
    remote_ids: RemoteIds | None = None

    @property
    def kind(self) -> str | None:
        return self.fields.get(KIND)

    @property
    def address(self) -> dict:
        return self.fields.get(ADDRESS) or {}

    @property
    def details(self) -> dict:
        return self.fields.get(DETAILS) or {}

    @property
    def rooms(self) -> list[Room]:
        return list(self.fields.get(ROOMS) or [])

    @property
    def photos(self) -> list[PendingAttachment]:
        return list(self.fields.get(PHOTOS) or [])

    @property
    def features(self) -> list[str]:
        return list(self.fields.get(FEATURES) or [])

    @property
    def publication(self) -> dict:
        return self.fields.get(PUBLICATION) or {}

    def is_empty(self) -> bool:
        return not self.fields and self.remote_ids is None

    def to_snapshot(self) -> dict:
        """Serialize for durable storage.

        Attachments are left out: their file handles cannot be serialized
        and must be re-added after a reload.
        """
        fields = {k: v for k, v in self.fields.items() if k != PHOTOS}
        if ROOMS in fields:
            fields[ROOMS] = [room.to_dict() for room in self.rooms]
        return {
            "version": SNAPSHOT_VERSION,
            "mode": self.mode,
            "current_step": self.current_step,
            "fields": fields,
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "Draft":
        """Create from a snapshot written by to_snapshot."""
        fields = dict(data.get("fields") or {})
        fields.pop(PHOTOS, None)
        if ROOMS in fields:
            fields[ROOMS] = [Room.from_dict(r) for r in fields[ROOMS]]
        return cls(
            mode=data["mode"],
            current_step=data["current_step"],
            fields=fields,
        )


@dataclass
class ItemFailure:
    """One soft failure: a single room, attachment or call that did not go through."""

    stage: StageName
    detail: str
    item: str | None = None

    def to_dict(self) -> dict:
        return {"stage": self.stage, "item": self.item, "detail": self.detail}


@dataclass
class StageOutcome:
    """Audit record for one finalization stage."""

    stage: StageName
    status: StageStatus
    fatal: bool = False
    error: str | None = None
    items_total: int = 0
    items_succeeded: int = 0
    item_statuses: dict[str, UploadStatus] = field(default_factory=dict)
    failures: list[ItemFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "stage": self.stage,
            "status": self.status,
            "fatal": self.fatal,
            "error": self.error,
            "items_total": self.items_total,
            "items_succeeded": self.items_succeeded,
            "item_statuses": dict(self.item_statuses),
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass(frozen=True)
class ProgressEvent:
    """Progress notification emitted while a finalization attempt runs."""

    kind: ProgressKind
    stage: StageName
    fraction: float
    # Position in the draft's photo list, not in upload order
    item_index: int | None = None
    item_status: UploadStatus | None = None
    item_id: str | None = None


MESSAGES: dict[str, str] = {
    "completed": "Property created and fully configured.",
    "completed_with_warnings": (
        "Property created. Some optional steps need manual follow-up "
        "({count} item(s)); you can complete them from the property page."
    ),
    "failed_fatal": "Property not created: {error}. Please retry.",
}


@dataclass
class FinalizationResult:
    """Terminal outcome of one finalization attempt."""

    outcome: FinalizationOutcome
    stages: list[StageOutcome] = field(default_factory=list)
    remote_ids: RemoteIds | None = None
    warnings: list[ItemFailure] = field(default_factory=list)
    error: str | None = None

    @property
    def created(self) -> bool:
        return self.outcome != "failed_fatal"

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    @property
    def message(self) -> str:
        """Single user-facing message for this outcome."""
        return MESSAGES[self.outcome].format(count=self.warning_count, error=self.error)

    def stage(self, name: StageName) -> StageOutcome | None:
        return next((s for s in self.stages if s.stage == name), None)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "outcome": self.outcome,
            "primary_id": self.remote_ids.primary_id if self.remote_ids else None,
            "secondary_id": self.remote_ids.secondary_id if self.remote_ids else None,
            "error": self.error,
            "message": self.message,
            "stages": [s.to_dict() for s in self.stages],
            "warnings": [w.to_dict() for w in self.warnings],
        }
