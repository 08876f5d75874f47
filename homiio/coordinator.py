"""Client-side state for a user's saved properties and folders.

Every mutation follows the same shape:

1. check the per-property guard (one in-flight mutation per property)
2. stage the optimistic changes on an ``OptimisticUpdate`` and apply them
3. await the remote call
4. commit and reconcile with the server, or roll every staged change back

Steps 1, 2 and the commit/rollback in 4 never await, so on a single event
loop they are atomic with respect to other coroutines. Folder counts are
adjusted by deltas rather than recomputed, so overlapping operations on the
same folder add up instead of overwriting each other. A refresh that lands
while mutations are in flight re-applies their pending deltas and saved
state on top of the server's view, so a later rollback undoes exactly what
is still applied.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, NoReturn

from pydantic import ValidationError as PydanticValidationError

from .client import SavedPropertiesApi
from .errors import (
    ErrorCode,
    HomiioError,
    NotFoundError,
    SavedPropertiesError,
    ValidationError,
    as_homiio_error,
    classify_error,
)
from .schemas import (
    BulkMoveError,
    BulkMoveResult,
    CreateFolderData,
    SavedPropertiesSnapshot,
    SavedProperty,
    SavedPropertyFolder,
    SaveState,
    UpdateFolderData,
    require_folder_name,
)

logger = logging.getLogger(__name__)


class OptimisticUpdate:
    """A set of local changes bracketing one remote call.

    Changes are staged as ``(do, undo)`` pairs. ``apply`` runs every ``do``,
    ``rollback`` runs the ``undo`` callables in reverse order, and both
    ``commit`` and ``rollback`` run the ``on_settle`` callbacks exactly once.
    """

    def __init__(self, description: str) -> None:
        self.description = description
        self._steps: list[tuple[Callable[[], Any], Callable[[Any], None]]] = []
        self._applied: list[tuple[Callable[[Any], None], Any]] = []
        self._on_settle: list[Callable[[], None]] = []
        self.settled = False

    def stage(self, do: Callable[[], Any], undo: Callable[[Any], None]) -> None:
        """``undo`` receives whatever ``do`` returned."""
        self._steps.append((do, undo))

    def on_settle(self, callback: Callable[[], None]) -> None:
        self._on_settle.append(callback)

    def apply(self) -> None:
        for do, undo in self._steps:
            self._applied.append((undo, do()))
        self._steps.clear()

    def commit(self) -> None:
        self._settle()

    def rollback(self) -> None:
        if self.settled:
            return
        logger.debug(f"Rolling back {self.description}")
        for undo, result in reversed(self._applied):
            undo(result)
        self._settle()

    def _settle(self) -> None:
        if self.settled:
            return
        self.settled = True
        self._applied.clear()
        for callback in self._on_settle:
            callback()


class SavedPropertyCoordinator:
    """Optimistic, guarded view of the saved properties held by the server."""

    def __init__(self, api: SavedPropertiesApi) -> None:
        self.api = api
        self.properties: list[SavedProperty] = []
        self.folders: list[SavedPropertyFolder] = []
        self.saved_property_ids: set[str] = set()
        self.saving_property_ids: set[str] = set()
        # Folder each saved property currently sits in (None = uncategorized)
        self.property_folders: dict[str, str | None] = {}
        self.error: SavedPropertiesError | None = None
        self.is_initialized = False
        self.last_updated: datetime | None = None
        self._directions: dict[str, SaveState] = {}
        # Count deltas applied by in-flight mutations, per property and folder.
        # Snapshots do not include them yet, so they are re-applied on top.
        self._pending_counts: dict[str, dict[str, int]] = {}
        self._refresh_seq = 0
        self._applied_seq = 0

    # =========================================================================
    # Queries
    # =========================================================================

    def is_saved(self, property_id: str) -> bool:
        return property_id in self.saved_property_ids

    def is_saving(self, property_id: str) -> bool:
        return property_id in self.saving_property_ids

    def state_of(self, property_id: str) -> SaveState:
        if property_id in self.saving_property_ids:
            return self._directions[property_id]
        return SaveState.SAVED if property_id in self.saved_property_ids else SaveState.UNSAVED

    def get_folder(self, folder_id: str | None) -> SavedPropertyFolder | None:
        if folder_id is None:
            return None
        return next((f for f in self.folders if f.id == folder_id), None)

    def get_default_folder(self) -> SavedPropertyFolder | None:
        return next((f for f in self.folders if f.is_default), None)

    def folder_count(self, folder_id: str) -> int:
        folder = self.get_folder(folder_id)
        return folder.property_count if folder else 0

    def get_property(self, property_id: str) -> SavedProperty | None:
        return next((p for p in self.properties if p.property_id == property_id), None)

    # =========================================================================
    # Local state primitives (synchronous)
    # =========================================================================

    def adjust_folder_count(self, folder_id: str | None, delta: int) -> int:
        """Add ``delta`` to a folder's count, clamped at zero.

        Returns the delta actually applied so it can be reversed exactly.
        """
        for index, folder in enumerate(self.folders):
            if folder.id == folder_id:
                new_count = max(0, folder.property_count + delta)
                self.folders[index] = folder.model_copy(update={"property_count": new_count})
                return new_count - folder.property_count
        return 0

    def _replace_folder(self, folder_id: str, folder: SavedPropertyFolder | None) -> None:
        for index, existing in enumerate(self.folders):
            if existing.id == folder_id:
                if folder is None:
                    del self.folders[index]
                else:
                    self.folders[index] = folder
                return

    def _set_property(self, record: SavedProperty | None, property_id: str) -> SavedProperty | None:
        """Insert/replace (or remove, when ``record`` is None) a local record.

        Returns the record previously held for ``property_id``.
        """
        previous = self.get_property(property_id)
        self.properties = [p for p in self.properties if p.property_id != property_id]
        if record is not None:
            self.properties.append(record)
        return previous

    def _apply_snapshot(self, snapshot: SavedPropertiesSnapshot) -> None:
        self.properties = list(snapshot.properties)
        self.folders = list(snapshot.folders)
        for counts in self._pending_counts.values():
            for folder_id, delta in list(counts.items()):
                counts[folder_id] = self.adjust_folder_count(folder_id, delta)
        folders = {p.property_id: p.folder_id for p in snapshot.properties}
        saved = set(folders)
        # Keep the optimistic view of properties whose mutation is still in flight
        for property_id in self.saving_property_ids:
            if self._directions.get(property_id) == SaveState.SAVING:
                saved.add(property_id)
                if property_id in self.property_folders:
                    folders[property_id] = self.property_folders[property_id]
            else:
                saved.discard(property_id)
                folders.pop(property_id, None)
        self.property_folders = folders
        self.saved_property_ids = saved
        self.is_initialized = True
        self.last_updated = datetime.now(timezone.utc)

    def _begin(self, property_id: str, direction: SaveState) -> OptimisticUpdate | None:
        """Take the per-property guard, or return None if it is held."""
        if property_id in self.saving_property_ids:
            logger.debug(f"Ignoring {direction.value} for {property_id}: mutation in flight")
            return None
        intent = OptimisticUpdate(f"{direction.value} {property_id}")
        self.saving_property_ids.add(property_id)
        self._directions[property_id] = direction

        def release() -> None:
            self.saving_property_ids.discard(property_id)
            self._directions.pop(property_id, None)
            self._pending_counts.pop(property_id, None)

        intent.on_settle(release)
        return intent

    def _stage_count(
        self, intent: OptimisticUpdate, property_id: str, folder_id: str, delta: int
    ) -> None:
        """Stage a folder count change that survives snapshots until settled."""
        counts = self._pending_counts.setdefault(property_id, {})

        def do() -> None:
            applied = self.adjust_folder_count(folder_id, delta)
            counts[folder_id] = counts.get(folder_id, 0) + applied

        def undo(_) -> None:
            self.adjust_folder_count(folder_id, -counts.pop(folder_id, 0))

        intent.stage(do, undo)

    def _fail(self, exc: BaseException, context: str) -> HomiioError:
        error = as_homiio_error(exc)
        self.error = classify_error(error, context)
        logger.warning(f"{context} failed: {error.code.value} {error.message}")
        return error

    def _raise(self, exc: BaseException, context: str) -> NoReturn:
        """Record and re-raise a failure as a HomiioError.

        Cancellation and other non-Exception signals pass through unrecorded.
        """
        if not isinstance(exc, Exception):
            raise exc
        error = self._fail(exc, context)
        if error is exc:
            raise exc
        raise error from exc

    async def _remote(self, intent: OptimisticUpdate, context: str, call):
        """Await ``call`` and settle ``intent``; failures roll back and re-raise."""
        try:
            result = await call
        except BaseException as exc:
            intent.rollback()
            self._raise(exc, context)
        intent.commit()
        return result

    async def _reconcile(self, context: str) -> None:
        # The mutation already succeeded; a failed refresh only leaves the
        # optimistic state in place until the next one
        try:
            await self.refresh()
        except HomiioError as exc:
            self.error = classify_error(exc, f"{context}:refresh")
            logger.warning(f"Refresh after {context} failed: {exc.message}")

    # =========================================================================
    # Loading
    # =========================================================================

    async def refresh(self) -> None:
        """Replace local state with the server's (authoritative) view.

        Always reads past the client cache. A snapshot that comes back after
        a later refresh has already been applied is dropped.
        """
        self._refresh_seq += 1
        seq = self._refresh_seq
        snapshot = await self.api.get_snapshot(force=True)
        if seq < self._applied_seq:
            logger.debug(f"Dropping out-of-order snapshot {seq}")
            return
        self._applied_seq = seq
        self._apply_snapshot(snapshot)
        logger.debug(
            f"Reconciled {len(snapshot.properties)} saved properties, "
            f"{len(snapshot.folders)} folders"
        )

    # =========================================================================
    # Saving / unsaving
    # =========================================================================

    async def save_property(
        self,
        property_id: str,
        folder_id: str | None = None,
        notes: str | None = None,
    ) -> bool:
        """Save (or re-file) a property.

        Returns False without calling the server when a mutation for the
        same property is already in flight. Saving an already-saved property
        into the folder it is already in changes no counts.
        """
        return await self._save(property_id, folder_id, notes, reconcile=True)

    async def _save(
        self,
        property_id: str,
        folder_id: str | None,
        notes: str | None,
        *,
        reconcile: bool,
    ) -> bool:
        if not property_id:
            raise ValidationError("Property ID is required", field="property_id")
        intent = self._begin(property_id, SaveState.SAVING)
        if intent is None:
            return False

        was_saved = property_id in self.saved_property_ids
        previous_folder = self.property_folders.get(property_id)
        default_folder = self.get_default_folder()
        # The server files folder-less saves in the default folder
        target_folder = folder_id or (default_folder.id if default_folder else None)

        if not was_saved:
            intent.stage(
                lambda: self.saved_property_ids.add(property_id),
                lambda _: self.saved_property_ids.discard(property_id),
            )
        if not was_saved or target_folder != previous_folder:
            if was_saved and previous_folder:
                self._stage_count(intent, property_id, previous_folder, -1)
            if target_folder:
                self._stage_count(intent, property_id, target_folder, 1)
            intent.stage(
                lambda: self.property_folders.__setitem__(property_id, target_folder),
                lambda _: self._restore_folder(property_id, was_saved, previous_folder),
            )
        intent.apply()

        saved = await self._remote(
            intent, "save_property", self.api.save_property(property_id, folder_id, notes)
        )
        self._set_property(saved, property_id)
        self.property_folders[property_id] = saved.folder_id
        logger.info(f"Saved property {property_id} to folder {saved.folder_id}")

        if reconcile:
            await self._reconcile("save_property")
        return True

    def _restore_folder(self, property_id: str, was_saved: bool, folder_id: str | None) -> None:
        if was_saved:
            self.property_folders[property_id] = folder_id
        else:
            self.property_folders.pop(property_id, None)

    async def unsave_property(self, property_id: str) -> bool:
        """Remove a property from the saved list.

        The folder whose count drops is the one the property is known to be in
        at the moment of the call.
        """
        if not property_id:
            raise ValidationError("Property ID is required", field="property_id")
        intent = self._begin(property_id, SaveState.UNSAVING)
        if intent is None:
            return False

        was_saved = property_id in self.saved_property_ids
        current_folder = self.property_folders.get(property_id)

        if was_saved:
            intent.stage(
                lambda: self.saved_property_ids.discard(property_id),
                lambda _: self.saved_property_ids.add(property_id),
            )
            if current_folder:
                self._stage_count(intent, property_id, current_folder, -1)
            intent.stage(
                lambda: self.property_folders.pop(property_id, None),
                lambda _: self.property_folders.__setitem__(property_id, current_folder),
            )
        intent.stage(
            lambda: self._set_property(None, property_id),
            lambda previous: self._set_property(previous, property_id),
        )
        intent.apply()

        await self._remote(intent, "unsave_property", self.api.unsave_property(property_id))
        logger.info(f"Unsaved property {property_id}")

        await self._reconcile("unsave_property")
        return True

    async def update_notes(self, property_id: str, notes: str) -> bool:
        """Edit the note on a saved property."""
        current = self.get_property(property_id)
        if current is None:
            raise NotFoundError("Saved property not found", context={"property_id": property_id})
        intent = self._begin(property_id, SaveState.SAVING)
        if intent is None:
            return False

        intent.stage(
            lambda: self._set_property(current.model_copy(update={"notes": notes}), property_id),
            lambda previous: self._set_property(previous, property_id),
        )
        intent.apply()

        updated = await self._remote(
            intent, "update_notes", self.api.update_property_notes(property_id, notes)
        )
        self._set_property(updated, property_id)
        return True

    async def move_to_folder(
        self, property_ids: Iterable[str], target_folder_id: str
    ) -> BulkMoveResult:
        """Move properties one at a time; one failure does not stop the rest."""
        result = BulkMoveResult()
        for property_id in property_ids:
            current = self.get_property(property_id)
            notes = current.notes if current else None
            try:
                moved = await self._save(property_id, target_folder_id, notes, reconcile=False)
            except HomiioError as exc:
                result.failed += 1
                result.errors.append(
                    BulkMoveError(property_id=property_id, code=exc.code.value, message=exc.message)
                )
                continue
            if moved:
                result.successful += 1
            else:
                result.failed += 1
                result.errors.append(
                    BulkMoveError(
                        property_id=property_id,
                        code=ErrorCode.IN_FLIGHT.value,
                        message="Another change to this property is in progress",
                    )
                )

        logger.info(
            f"Moved {result.successful} properties to {target_folder_id}, "
            f"{result.failed} failed"
        )
        if result.successful:
            await self._reconcile("move_to_folder")
        return result

    # =========================================================================
    # Folders
    # =========================================================================

    async def create_folder(self, data: CreateFolderData | dict) -> SavedPropertyFolder:
        """Create a folder, showing it immediately under a provisional id."""
        raw = data.model_dump() if isinstance(data, CreateFolderData) else dict(data)
        raw["name"] = require_folder_name(raw.get("name"))
        payload = _validated(CreateFolderData, raw)

        provisional = SavedPropertyFolder(
            id=f"temp-{uuid.uuid4().hex}",
            name=payload.name,
            description=payload.description,
            color=payload.color,
            icon=payload.icon,
        )
        self.folders.append(provisional)
        try:
            folder = await self.api.create_folder(payload)
        except BaseException as exc:
            self._replace_folder(provisional.id, None)
            self._raise(exc, "create_folder")

        if self.get_folder(provisional.id) is not None:
            self._replace_folder(provisional.id, folder)
        elif self.get_folder(folder.id) is None:
            # A refresh dropped the provisional entry before this returned
            self.folders.append(folder)
        logger.info(f"Created folder {folder.id} ({folder.name})")
        return folder

    async def update_folder(
        self, folder_id: str, data: UpdateFolderData | dict
    ) -> SavedPropertyFolder:
        """Rename/recolor/re-describe a folder.

        The default folder keeps its name and color; attempts to change them
        are rejected before any request is sent.
        """
        folder = self.get_folder(folder_id)
        if folder is None:
            raise NotFoundError("Folder not found", context={"folder_id": folder_id})
        payload = data if isinstance(data, UpdateFolderData) else _validated(UpdateFolderData, data)
        changes = payload.changes()
        if "name" in payload.model_fields_set:
            changes["name"] = require_folder_name(payload.name)
        if folder.is_default and any(
            key in changes and changes[key] != getattr(folder, key) for key in ("name", "color")
        ):
            raise ValidationError(
                "The default folder cannot be renamed or recolored", field="folder_id"
            )
        payload = UpdateFolderData(**changes)

        self._replace_folder(folder_id, folder.model_copy(update=changes))
        try:
            updated = await self.api.update_folder(folder_id, payload)
        except BaseException as exc:
            self._replace_folder(folder_id, folder)
            self._raise(exc, "update_folder")

        self._replace_folder(folder_id, updated)
        return updated

    async def delete_folder(self, folder_id: str) -> None:
        """Delete a folder once the server confirms; members become uncategorized."""
        folder = self.get_folder(folder_id)
        if folder is None:
            raise NotFoundError("Folder not found", context={"folder_id": folder_id})
        if folder.is_default:
            raise ValidationError("The default folder cannot be deleted", field="folder_id")

        try:
            await self.api.delete_folder(folder_id)
        except BaseException as exc:
            self._raise(exc, "delete_folder")

        self._replace_folder(folder_id, None)
        for property_id, member_folder in list(self.property_folders.items()):
            if member_folder == folder_id:
                self.property_folders[property_id] = None
        self.properties = [
            p.model_copy(update={"folder_id": None}) if p.folder_id == folder_id else p
            for p in self.properties
        ]
        logger.info(f"Deleted folder {folder_id}")


def _validated(model: type, data: dict) -> Any:
    """Validate ``data`` into ``model``, raising our ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors(include_url=False)[0]
        field = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"{field}: {first['msg']}", field=field) from exc
