from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.moc.audit import audit_trail, event_to_dict
from app.moc.db import db_session
from app.moc.errors import ValidationError
from app.moc.models import User
from app.moc.modules.rfc import service
from app.moc.modules.rfc.history import history_to_dict
from app.moc.rbac import PERM_ADMIN, PERM_VIEW, require_permission
from app.moc.storage import storage_from_config

bp = Blueprint("rfc", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    payload.pop("csrf_token", None)
    return payload


# ---------- List / create ----------
@bp.get("/rfcs")
@require_permission(PERM_VIEW)
def rfc_list():
    s = db_session()
    u = _current_user()
    records = service.list_records(s, u.id, request.args.get("status"))
    return jsonify({"rfcs": [service.record_to_dict(s, r) for r in records]})


@bp.post("/rfcs")
@require_permission(PERM_VIEW)
def rfc_create():
    s = db_session()
    u = _current_user()
    record = service.create_record(s, _json_body(), u.id)
    return jsonify(service.record_to_dict(s, record)), 201


# ---------- Detail / update / delete ----------
@bp.get("/rfcs/<int:rfc_id>")
@require_permission(PERM_VIEW)
def rfc_detail(rfc_id: int):
    s = db_session()
    u = _current_user()
    record = service.get_record_for_actor(s, rfc_id, u.id)
    return jsonify(service.record_to_dict(s, record))


@bp.patch("/rfcs/<int:rfc_id>")
@require_permission(PERM_VIEW)
def rfc_update(rfc_id: int):
    s = db_session()
    u = _current_user()
    result = service.update_record(s, rfc_id, _json_body(), u.id)
    return jsonify(result.to_dict())


@bp.delete("/rfcs/<int:rfc_id>")
@require_permission(PERM_VIEW)
def rfc_delete(rfc_id: int):
    s = db_session()
    u = _current_user()
    result = service.delete_record(s, rfc_id, u.id)
    return jsonify(result.to_dict())


# ---------- Workflow ----------
@bp.post("/rfcs/<int:rfc_id>/status")
@require_permission(PERM_VIEW)
def rfc_change_status(rfc_id: int):
    s = db_session()
    u = _current_user()
    body = _json_body()
    result = service.change_status(s, rfc_id, body.get("status") or "", u.id, body.get("comments"))
    return jsonify(result.to_dict())


@bp.post("/rfcs/<int:rfc_id>/resubmit")
@require_permission(PERM_VIEW)
def rfc_resubmit(rfc_id: int):
    s = db_session()
    u = _current_user()
    result = service.resubmit(s, rfc_id, u.id)
    return jsonify(result.to_dict())


@bp.post("/rfcs/<int:rfc_id>/departments/<int:department_id>/decision")
@require_permission(PERM_VIEW)
def rfc_department_decision(rfc_id: int, department_id: int):
    s = db_session()
    u = _current_user()
    body = _json_body()
    result = service.decide_department_step(
        s,
        rfc_id,
        department_id,
        body.get("decision") or "",
        u.id,
        body.get("comments"),
    )
    return jsonify(result.to_dict())


# ---------- Edit history ----------
@bp.get("/rfcs/<int:rfc_id>/history")
@require_permission(PERM_VIEW)
def rfc_history(rfc_id: int):
    s = db_session()
    u = _current_user()
    service.get_record_for_actor(s, rfc_id, u.id)
    if (request.args.get("latest") or "").strip() in ("1", "true"):
        entries = service.latest_edit_per_user(s, rfc_id)
    else:
        entries = service.list_edit_history(s, rfc_id)
    return jsonify({"history": [history_to_dict(e) for e in entries]})


@bp.get("/rfcs/<int:rfc_id>/audit")
@require_permission(PERM_ADMIN)
def rfc_audit(rfc_id: int):
    # Admin only; the trail outlives the record.
    s = db_session()
    return jsonify({"events": [event_to_dict(ev) for ev in audit_trail(s, "RfcRecord", rfc_id)]})


# ---------- Attachments ----------
@bp.get("/rfcs/<int:rfc_id>/attachments")
@require_permission(PERM_VIEW)
def rfc_attachments(rfc_id: int):
    s = db_session()
    u = _current_user()
    service.get_record_for_actor(s, rfc_id, u.id)
    storage = storage_from_config(current_app.config)
    return jsonify({"attachments": service.list_attachments(s, rfc_id, storage=storage)})


@bp.post("/rfcs/<int:rfc_id>/attachments")
@require_permission(PERM_VIEW)
def rfc_attachment_upload(rfc_id: int):
    s = db_session()
    u = _current_user()
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("File is required.")
    storage = storage_from_config(current_app.config)
    att = service.add_attachment(s, rfc_id, f.filename, f.mimetype, f.read(), u.id, storage=storage)
    return jsonify({"id": att.id, "filename": att.filename, "size_bytes": att.size_bytes}), 201


@bp.get("/rfcs/<int:rfc_id>/attachments/<int:attachment_id>/download")
@require_permission(PERM_VIEW)
def rfc_attachment_download(rfc_id: int, attachment_id: int):
    s = db_session()
    u = _current_user()
    storage = storage_from_config(current_app.config)
    att, stream = service.open_attachment(s, rfc_id, attachment_id, u.id, storage=storage)
    return send_file(
        stream,
        mimetype=att.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=att.filename,
    )
