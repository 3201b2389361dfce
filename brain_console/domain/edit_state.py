from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional

from brain_console.domain.exceptions import FieldKindConflictError
from brain_console.domain.schemas.analysis import EnhancementAnalysis, FieldKind
from brain_console.domain.schemas.uploads import EntitySnapshot, PendingFile, UploadedFileRef


class EditState:
    """
    Local working set of one enhancement session.

    Text answers and queued files are keyed by fieldId (or question id). A key
    is either a text key or a file key, never both; the kind bound from the
    analysis decides which.
    """

    def __init__(self, field_kinds: Optional[Mapping[str, FieldKind]] = None):
        self._kinds: Dict[str, FieldKind] = dict(field_kinds or {})
        self.text_answers: Dict[str, str] = {}
        self.pending_files: Dict[str, List[PendingFile]] = {}
        self.persisted_files: Dict[str, List[UploadedFileRef]] = {}
        self._edited: set[str] = set()

    # --- kinds ---------------------------------------------------------------

    def bind_kinds(self, kinds: Mapping[str, FieldKind]) -> None:
        for field_id, kind in kinds.items():
            if kind == "file" and self.text(field_id).strip():
                raise FieldKindConflictError(field_id, "holds a text answer but is declared as a file field")
            if kind != "file" and self.has_files(field_id):
                raise FieldKindConflictError(field_id, f"holds files but is declared as a {kind} field")
        self._kinds.update(kinds)

    def kind_of(self, field_id: str) -> Optional[FieldKind]:
        return self._kinds.get(field_id)

    # --- mutation --------------------------------------------------------------

    def set_text(self, field_id: str, value: str) -> None:
        if self.kind_of(field_id) == "file":
            raise FieldKindConflictError(field_id, "is a file field and cannot take a text answer")
        if self.has_files(field_id):
            raise FieldKindConflictError(field_id, "already has files attached")
        self.text_answers[field_id] = value
        self._edited.add(field_id)

    def queue_files(self, field_id: str, files: Iterable[PendingFile]) -> None:
        kind = self.kind_of(field_id)
        if kind is not None and kind != "file":
            raise FieldKindConflictError(field_id, f"is a {kind} field and cannot take files")
        if self.text(field_id).strip():
            raise FieldKindConflictError(field_id, "already has a text answer")
        self.text_answers.pop(field_id, None)
        self.pending_files.setdefault(field_id, []).extend(files)

    def remove_file(self, field_id: str, handle_id: str) -> bool:
        queue = self.pending_files.get(field_id)
        if not queue:
            return False
        kept = [f for f in queue if f.handle_id != handle_id]
        self.pending_files[field_id] = kept
        return len(kept) != len(queue)

    def clear(self) -> None:
        self.text_answers.clear()
        self.pending_files.clear()
        self.persisted_files.clear()
        self._edited.clear()

    # --- queries ---------------------------------------------------------------

    def text(self, field_id: str) -> str:
        return self.text_answers.get(field_id) or ""

    def files(self, field_id: str) -> List[PendingFile]:
        return list(self.pending_files.get(field_id) or [])

    def has_files(self, field_id: str) -> bool:
        return bool(self.pending_files.get(field_id)) or bool(self.persisted_files.get(field_id))

    def is_filled(self, field_id: str, kind: Optional[FieldKind] = None) -> bool:
        resolved = kind or self.kind_of(field_id) or "text"
        if resolved == "file":
            return self.has_files(field_id)
        return bool(self.text(field_id).strip())

    def text_updates(self) -> Dict[str, str]:
        """
        Text answers to send on save: non-blank values plus anything the user
        edited, so a cleared answer is sent but an untouched blank seed is not.
        """
        return {
            field_id: value
            for field_id, value in self.text_answers.items()
            if self.kind_of(field_id) != "file" and (value.strip() or field_id in self._edited)
        }

    def queued_batch(self) -> Dict[str, List[PendingFile]]:
        return {field_id: list(files) for field_id, files in self.pending_files.items() if files}

    @property
    def pending_file_count(self) -> int:
        return sum(len(files) for files in self.pending_files.values())

    def copy(self) -> "EditState":
        clone = EditState(self._kinds)
        clone.text_answers = dict(self.text_answers)
        clone.pending_files = {k: list(v) for k, v in self.pending_files.items()}
        clone.persisted_files = {k: list(v) for k, v in self.persisted_files.items()}
        clone._edited = set(self._edited)
        return clone


def prefill_edit_state(
    state: EditState,
    analysis: EnhancementAnalysis,
    snapshot: Optional[EntitySnapshot],
    exclude_fields: Iterable[str] = (),
) -> EditState:
    """
    Merge persisted answers into `state` without overwriting anything the user typed.

    Fields in `exclude_fields` (strategic-recommendation targets) are never
    carried forward from the snapshot; they start empty.
    """
    excluded = set(exclude_fields)
    kinds = analysis.field_kinds()
    state.bind_kinds(kinds)

    persisted_text = snapshot.text_answers() if snapshot else {}
    persisted_uploads = snapshot.uploads_by_field() if snapshot else {}

    for field_id, value in persisted_text.items():
        if field_id in excluded or kinds.get(field_id) == "file":
            continue
        if not state.text(field_id).strip() and not state.has_files(field_id):
            state.text_answers[field_id] = value

    for field_id, refs in persisted_uploads.items():
        if field_id in excluded or kinds.get(field_id, "file") != "file":
            continue
        if state.text(field_id).strip():
            continue
        state.persisted_files[field_id] = list(refs)

    for field_id, kind in kinds.items():
        if kind == "file":
            state.pending_files.setdefault(field_id, [])
        else:
            state.text_answers.setdefault(field_id, "")

    return state
