import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.moc.modules.rfc import history, service
from app.moc.modules.rfc import workflow as wf


def _new_rfc(s, ids):
    return service.create_record(
        s,
        {"title": "Install bypass valve", "description": "Line 4 bypass.", "viewer_ids": [ids.vic]},
        ids.alice,
    )


def test_diff_fields_ignores_list_order():
    before = {"viewer_ids": [3, 1], "title": "a"}
    assert history.diff_fields(before, {"viewer_ids": [1, 3], "title": "a"}) == []

    changes = history.diff_fields(before, {"viewer_ids": [1], "title": "b"})
    assert [c.field for c in changes] == ["viewer_ids", "title"]
    assert changes[1].old_value == "a" and changes[1].new_value == "b"


def test_summary_names_at_most_three_fields():
    changes = [history.FieldChange(field=f, old_value=None, new_value=1) for f in ("a", "b", "c", "d")]
    assert history.summarize(changes) == "Updated 4 fields: a, b, c"
    assert history.summarize(changes[:1]) == "Updated 1 field: a"
    assert history.summarize([]) == "Updated RFC details"


def test_one_live_entry_per_editor(s, ids):
    rec = _new_rfc(s, ids)
    service.update_record(s, rec.id, {"title": "Install bypass valve v2"}, ids.alice)
    service.update_record(s, rec.id, {"description": "Line 4 and 5 bypass.", "deadline": "2027-01-15"}, ids.alice)

    entries = service.list_edit_history(s, rec.id)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.edited_by_id == ids.alice
    assert entry.edited_by_name == "Alice Submitter"
    assert [c["field"] for c in entry.field_changes] == ["description", "deadline"]
    assert entry.field_changes[1]["new_value"] == "2027-01-15"
    assert entry.changes_description == "Updated 2 fields: description, deadline"


def test_entries_not_merged_across_editors(s, ids):
    rec = _new_rfc(s, ids)
    service.update_record(s, rec.id, {"title": "By Alice"}, ids.alice)
    service.update_record(s, rec.id, {"title": "By Admin"}, ids.admin)

    latest = service.latest_edit_per_user(s, rec.id)
    assert [e.edited_by_id for e in latest] == [ids.admin, ids.alice]
    assert {tuple(c["field"] for c in e.field_changes) for e in latest} == {("title",)}


def test_history_failure_is_a_warning(s, ids, monkeypatch):
    rec = _new_rfc(s, ids)
    service.change_status(s, rec.id, wf.PENDING_DEPARTMENT_APPROVAL, ids.alice)

    def boom(*args, **kwargs):
        raise SQLAlchemyError("history table unavailable")

    monkeypatch.setattr(history, "record_edit", boom)
    result = service.update_record(s, rec.id, {"title": "Changed anyway"}, ids.alice)

    assert result.changed is True
    assert result.warnings == ["Edit history could not be recorded."]
    s.expire_all()
    record = service.get_record(s, rec.id)
    assert record.title == "Changed anyway"
    assert record.status == wf.DRAFT


def test_history_for_missing_record(s):
    from app.moc.errors import NotFound

    with pytest.raises(NotFound):
        service.list_edit_history(s, 12345)
