"""
Per-editor edit history for RFC records.

Only the latest edit of each editor is kept per record: recording a new edit
deletes the editor's previous entry for that record first.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select

from app.moc.modules.rfc.models import EditHistory

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.moc.models import User

SUMMARY_FIELD_LIMIT = 3


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> dict:
        return asdict(self)


def _comparable(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        try:
            return sorted(value)
        except TypeError:
            return sorted(value, key=repr)
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (tuple, set)):
        return list(value)
    return value


def values_equal(old: Any, new: Any) -> bool:
    """Lists compare order-insensitively; everything else by value."""
    return _comparable(old) == _comparable(new)


def diff_fields(before: dict[str, Any], after: dict[str, Any]) -> list[FieldChange]:
    """Changes for every key in `after` whose value differs from `before`."""
    changes = []
    for field, new in after.items():
        old = before.get(field)
        if values_equal(old, new):
            continue
        changes.append(FieldChange(field=field, old_value=_jsonable(old), new_value=_jsonable(new)))
    return changes


def summarize(changes: list[FieldChange]) -> str:
    if not changes:
        return "Updated RFC details"
    n = len(changes)
    names = ", ".join(c.field for c in changes[:SUMMARY_FIELD_LIMIT])
    return f"Updated {n} field{'s' if n > 1 else ''}: {names}"


def record_edit(s: "Session", editor: "User", rfc_id: int, changes: list[FieldChange]) -> EditHistory:
    """Replace the editor's entry for this record with one describing `changes`."""
    s.execute(
        delete(EditHistory).where(
            EditHistory.rfc_id == rfc_id,
            EditHistory.edited_by_id == editor.id,
        )
    )
    entry = EditHistory(
        rfc_id=rfc_id,
        edited_by_id=editor.id,
        edited_by_name=editor.display_name,
        edited_at=datetime.utcnow(),
        changes_description=summarize(changes),
        field_changes=[c.to_dict() for c in changes],
    )
    s.add(entry)
    s.flush()
    return entry


def list_edit_history(s: "Session", rfc_id: int) -> list[EditHistory]:
    q = (
        select(EditHistory)
        .where(EditHistory.rfc_id == rfc_id)
        .order_by(EditHistory.edited_at.desc(), EditHistory.id.desc())
    )
    return list(s.scalars(q))


def latest_edit_per_user(s: "Session", rfc_id: int) -> list[EditHistory]:
    latest: dict[int | None, EditHistory] = {}
    for entry in list_edit_history(s, rfc_id):
        latest.setdefault(entry.edited_by_id, entry)
    return sorted(latest.values(), key=lambda e: (e.edited_at, e.id), reverse=True)


def history_to_dict(entry: EditHistory) -> dict:
    return {
        "id": entry.id,
        "rfc_id": entry.rfc_id,
        "edited_by_id": entry.edited_by_id,
        "edited_by_name": entry.edited_by_name,
        "edited_at": entry.edited_at.isoformat() if entry.edited_at else None,
        "changes_description": entry.changes_description,
        "field_changes": entry.field_changes or [],
    }
