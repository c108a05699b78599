"""Draft Store: the single mutable onboarding draft.

All field changes go through patch(), which performs a shallow merge and
writes a snapshot. The room and attachment helpers compute a complete
replacement list and hand it to patch(), so lists are never appended to
in place. Field patches can be undone; attachments are outside the history.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Mapping

from .errors import AttachmentLimitError, SnapshotError, UnsupportedMediaTypeError
from .models import (
    ALLOWED_MIME_TYPES,
    DEFAULT_ATTACHMENT_TAG,
    DEFAULT_MODE,
    MAX_ATTACHMENTS,
    MAX_FILE_SIZE,
    PHOTOS,
    ROOM_TEMPLATES,
    ROOMS,
    SNAPSHOT_VERSION,
    Draft,
    LocalFile,
    PendingAttachment,
    RemoteIds,
    Room,
    StepId,
    WizardMode,
    step_sequence,
)
from .snapshot_store import MemorySnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)

# Patches kept for undo
HISTORY_LIMIT = 50


class DraftStore:
    """Holds the onboarding draft and its navigation position.

    Components share one DraftStore instance and read ``store.draft``;
    they never keep their own copy of the fields.
    """

    def __init__(
        self,
        snapshots: SnapshotStore | None = None,
        key: str = "property-draft",
        allowed_mime_types: tuple[str, ...] = ALLOWED_MIME_TYPES,
        max_attachments: int = MAX_ATTACHMENTS,
        max_file_size: int = MAX_FILE_SIZE,
        default_tag: str = DEFAULT_ATTACHMENT_TAG,
    ):
        """Initialize the store and restore the last snapshot, if any.

        Args:
            snapshots: Durable key-value store; in-memory if omitted
            key: Snapshot key the draft is stored under
            allowed_mime_types: Mime types accepted by add_attachment
            max_attachments: Maximum number of attachments per draft
            max_file_size: Maximum size in bytes of one attachment
            default_tag: Tag given to attachments added without one
        """
        self.snapshots = snapshots if snapshots is not None else MemorySnapshotStore()
        self.key = key
        self.allowed_mime_types = allowed_mime_types
        self.max_attachments = max_attachments
        self.max_file_size = max_file_size
        self.default_tag = default_tag
        self._listeners: list[Callable[["DraftStore"], None]] = []
        self._undo: list[dict[str, Any]] = []
        self._redo: list[dict[str, Any]] = []
        self.draft = self._load()

    def add_listener(self, callback: Callable[["DraftStore"], None]) -> None:
        """Add a callback notified after every mutation.

        Args:
            callback: Called with this store. Signature: callback(store) -> None
        """
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[["DraftStore"], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # --- Core contract ---

    def patch(self, partial: Mapping[str, Any]) -> Draft:
        """Shallow-merge a partial update into the draft fields.

        List-valued fields are replaced wholesale. No validation happens here.

        Args:
            partial: Field keys to overwrite

        Returns:
            The (same) live draft
        """
        updates = dict(partial)
        if updates.get(ROOMS) is not None:
            updates[ROOMS] = [
                room if isinstance(room, Room) else Room.from_dict(room)
                for room in updates[ROOMS]
            ]
        previous = self.draft.fields
        fields = {**previous, **updates}
        # Nothing changes in memory unless the snapshot write succeeds.
        self._persist(dataclasses.replace(self.draft, fields=fields))

        if set(updates) - {PHOTOS}:
            self._undo.append(_without_photos(previous))
            del self._undo[:-HISTORY_LIMIT]
            self._redo.clear()
        self.draft.fields = fields
        if PHOTOS in updates:
            _release_dropped(previous.get(PHOTOS) or [], fields.get(PHOTOS) or [])
        self._notify()
        return self.draft

    def reset(self) -> None:
        """Clear the draft back to an empty FULL-mode draft at its first step.

        Local attachment handles are released and the undo history is dropped.
        """
        self._persist(Draft())

        for attachment in self.draft.photos:
            attachment.release()

        self.draft.mode = DEFAULT_MODE
        self.draft.current_step = step_sequence(DEFAULT_MODE)[0]
        self.draft.fields = {}
        self.draft.remote_ids = None
        self._undo.clear()
        self._redo.clear()
        self._notify()
        logger.info("Draft reset")

    def set_position(self, mode: WizardMode, step: StepId) -> None:
        """Write the navigation position (used by the step graph engine).

        Raises:
            ValueError: If step is not part of the sequence for mode
        """
        if step not in step_sequence(mode):
            raise ValueError(f"Step {step!r} is not part of the {mode!r} sequence")
        self._persist(dataclasses.replace(self.draft, mode=mode, current_step=step))
        self.draft.mode = mode
        self.draft.current_step = step
        self._notify()

    # --- History ---

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> bool:
        """Restore the fields as they were before the last patch.

        Attachments are not part of the history and stay as they are.

        Returns:
            False if there was nothing to undo
        """
        if not self._undo:
            return False
        self._restore(self._undo, self._redo)
        return True

    def redo(self) -> bool:
        """Re-apply the last undone patch. Returns False if there is none."""
        if not self._redo:
            return False
        self._restore(self._redo, self._undo)
        return True

    def _restore(self, source: list[dict], target: list[dict]) -> None:
        current = self.draft.fields
        fields = dict(source[-1])
        if current.get(PHOTOS):
            fields[PHOTOS] = current[PHOTOS]
        self._persist(dataclasses.replace(self.draft, fields=fields))

        source.pop()
        target.append(_without_photos(current))
        self.draft.fields = fields
        self._notify()

    def set_remote_ids(self, remote_ids: RemoteIds) -> None:
        """Record identifiers of the created resource (runtime only)."""
        self.draft.remote_ids = remote_ids
        self._notify()

    def clear_remote_ids(self) -> None:
        self.draft.remote_ids = None
        self._notify()

    # --- Rooms ---

    def add_room(self, room_type: str, name: str | None = None, is_private: bool = False) -> Room:
        rooms = self.draft.rooms
        room = Room(
            room_type=room_type,
            name=name,
            is_private=is_private,
            sort_order=len(rooms) + 1,
        )
        self.patch({ROOMS: rooms + [room]})
        return room

    def update_room(self, room_id: str, **changes: Any) -> Room:
        """Replace attributes of one room.

        Raises:
            KeyError: If no room has this id
        """
        rooms = self.draft.rooms
        index = self._room_index(rooms, room_id)
        rooms[index] = dataclasses.replace(rooms[index], **changes)
        self.patch({ROOMS: rooms})
        return rooms[index]

    def remove_room(self, room_id: str) -> None:
        rooms = self.draft.rooms
        self._room_index(rooms, room_id)
        remaining = [r for r in rooms if r.room_id != room_id]
        self.patch({ROOMS: _renumber(remaining)})

    def move_room(self, from_index: int, to_index: int) -> None:
        rooms = self.draft.rooms
        moved = rooms.pop(from_index)
        rooms.insert(to_index, moved)
        self.patch({ROOMS: _renumber(rooms)})

    def apply_room_template(self, template: str) -> list[Room]:
        """Replace the room list with a predefined layout.

        Raises:
            ValueError: If the template name is unknown
        """
        if template not in ROOM_TEMPLATES:
            raise ValueError(f"Unknown room template: {template!r}")
        rooms = [
            Room(room_type=room_type, name=name, sort_order=i + 1)
            for i, (room_type, name) in enumerate(ROOM_TEMPLATES[template])
        ]
        self.patch({ROOMS: rooms})
        return rooms

    @staticmethod
    def _room_index(rooms: list[Room], room_id: str) -> int:
        for i, room in enumerate(rooms):
            if room.room_id == room_id:
                return i
        raise KeyError(f"Unknown room: {room_id}")

    # --- Attachments ---

    def add_attachment(
        self,
        file: LocalFile,
        tag: str | None = None,
        primary: bool = False,
    ) -> PendingAttachment:
        """Add a local file to the draft.

        The first attachment becomes primary. Flagging a new attachment as
        primary clears the flag on all others.

        Raises:
            UnsupportedMediaTypeError: If the mime type is not allowed
            AttachmentLimitError: If the count or size limit is exceeded
        """
        if file.mime_type not in self.allowed_mime_types:
            raise UnsupportedMediaTypeError(
                f"{file.name}: unsupported type {file.mime_type}"
            )
        photos = self.draft.photos
        if len(photos) >= self.max_attachments:
            raise AttachmentLimitError(f"Limit of {self.max_attachments} attachments reached")
        if file.size > self.max_file_size:
            raise AttachmentLimitError(
                f"{file.name} exceeds {self.max_file_size // (1024 * 1024)} MB"
            )

        attachment = PendingAttachment(
            file=file,
            tag=tag or self.default_tag,
            is_primary=primary or not photos,
        )
        if attachment.is_primary:
            photos = [dataclasses.replace(p, is_primary=False) for p in photos]
        self.patch({PHOTOS: photos + [attachment]})
        return attachment

    def remove_attachment(self, attachment_id: str) -> None:
        """Remove an attachment and release its local handle.

        Raises:
            KeyError: If no attachment has this id
        """
        photos = self.draft.photos
        removed = self._attachment(photos, attachment_id)
        remaining = [p for p in photos if p.attachment_id != attachment_id]
        if removed.is_primary and remaining:
            remaining[0] = dataclasses.replace(remaining[0], is_primary=True)
        self.patch({PHOTOS: remaining})

    def set_primary_attachment(self, attachment_id: str) -> None:
        """Flag one attachment as primary and clear the flag on the others.

        Raises:
            KeyError: If no attachment has this id
        """
        photos = self.draft.photos
        self._attachment(photos, attachment_id)
        self.patch({
            PHOTOS: [
                dataclasses.replace(p, is_primary=p.attachment_id == attachment_id)
                for p in photos
            ]
        })

    @staticmethod
    def _attachment(photos: list[PendingAttachment], attachment_id: str) -> PendingAttachment:
        for photo in photos:
            if photo.attachment_id == attachment_id:
                return photo
        raise KeyError(f"Unknown attachment: {attachment_id}")

    # --- Persistence ---

    def _load(self) -> Draft:
        """Restore the draft from its snapshot, or start empty."""
        try:
            data = self.snapshots.get(self.key)
        except SnapshotError as e:
            logger.warning(f"Discarding unreadable draft snapshot: {e}")
            return Draft()

        if not data:
            return Draft()
        if data.get("version") != SNAPSHOT_VERSION:
            logger.warning(f"Discarding draft snapshot with version {data.get('version')!r}")
            return Draft()

        try:
            draft = Draft.from_snapshot(data)
            sequence = step_sequence(draft.mode)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed draft snapshot: {e}")
            return Draft()

        if draft.current_step not in sequence:
            draft.current_step = sequence[0]
        logger.info(f"Restored draft at step {draft.current_step!r} ({draft.mode} mode)")
        return draft

    def _persist(self, draft: Draft) -> None:
        self.snapshots.put(self.key, draft.to_snapshot())

    def _notify(self) -> None:
        for listener in self._listeners:
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Draft listener error: {e}")


def _renumber(rooms: list[Room]) -> list[Room]:
    return [dataclasses.replace(room, sort_order=i + 1) for i, room in enumerate(rooms)]


def _without_photos(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if k != PHOTOS}


def _release_dropped(
    previous: list[PendingAttachment], current: list[PendingAttachment]
) -> None:
    """Release local handles of attachments no longer in the draft."""
    kept = {p.attachment_id for p in current}
    for attachment in previous:
        if attachment.attachment_id not in kept:
            attachment.release()
