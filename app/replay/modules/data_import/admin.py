"""
Spreadsheet routes: parse an uploaded workbook, build a preview, apply a selection,
and export campaigns back out in the same workbook layout.
"""
from __future__ import annotations

import io

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.replay.db import db_session
from app.replay.errors import NotFoundError, ValidationError
from app.replay.ids import is_valid_campaign_id
from app.replay.models import User
from app.replay.modules.campaigns.projections import CampaignFilters, get_campaign_by_id, get_campaigns
from app.replay.rbac import require_permission

from .apply import apply_import, selected_ids
from .exporters.xlsx import XLSX_MIMETYPE, export_campaigns, export_filename
from .parsers.xlsx import parse_workbook
from .preview import ImportBatch, ImportPreview
from .reconcile import reconcile

bp = Blueprint("data_import", __name__)

_APPLY_STATUS_CODES = {"success": 200, "partial": 207, "failed": 422}


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


@bp.post("/import/parse")
@require_permission("import.preview")
def import_parse():
    """Multipart upload (`file`) of the operator workbook -> row groups."""
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Choose an .xlsx file to import.")
    if not f.filename.lower().endswith((".xlsx", ".xlsm")):
        raise ValidationError("Only .xlsx workbooks are supported.")

    batch, errors = parse_workbook(f.read())
    current_app.logger.info(
        "IMPORT: parsed %s rows=%d errors=%d request_id=%s",
        f.filename,
        batch.total_rows,
        len(errors),
        getattr(g, "request_id", None),
    )
    return jsonify({"batch": batch.to_dict(), "total_rows": batch.total_rows, "errors": [e.to_dict() for e in errors]})


@bp.post("/import/preview")
@require_permission("import.preview")
def import_preview():
    """Body: {"batch": {<sheet>: [rows...]}} (or the sheet groups at the top level)."""
    s = db_session()
    body = _json_body()
    batch = ImportBatch.from_dict(body.get("batch", body))
    preview = reconcile(
        s,
        batch,
        weight_tolerance_kg=float(current_app.config.get("WEIGHT_TOLERANCE_KG", 0.01)),
        default_material_type=current_app.config.get("DEFAULT_MATERIAL_TYPE", "PCR"),
    )
    # read-only; nothing to commit
    s.rollback()
    return jsonify(preview.to_dict())


@bp.post("/import/apply")
@require_permission("import.apply")
def import_apply():
    """
    Body: {"preview": {...}, "creates": [ids], "events": [ids], "updates": [ids]}
    When all three id lists are omitted, every item still marked selected is applied.
    """
    s = db_session()
    u = _current_user()
    body = _json_body()
    if "preview" not in body:
        raise ValidationError("preview is required.")
    preview = ImportPreview.from_dict(body["preview"])

    if not any(k in body for k in ("creates", "events", "updates")):
        create_ids, event_ids, update_ids = selected_ids(preview)
    else:
        create_ids, event_ids, update_ids = body.get("creates"), body.get("events"), body.get("updates")

    result = apply_import(
        s,
        preview,
        create_ids=create_ids,
        event_ids=event_ids,
        update_ids=update_ids,
        user_id=u.email,
    )
    s.commit()
    return jsonify(result.to_dict()), _APPLY_STATUS_CODES[result.status]


def _send_workbook(data: bytes, filename: str):
    return send_file(
        io.BytesIO(data),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


@bp.get("/export")
@require_permission("campaigns.view")
def export_list():
    """
    Query: ids=<comma-separated campaign ids>, or the campaign list filters (status=active, ...).
    """
    s = db_session()
    ids_param = (request.args.get("ids") or "").strip()
    if ids_param:
        ids = [i.strip() for i in ids_param.split(",") if i.strip()]
        invalid = [i for i in ids if not is_valid_campaign_id(i)]
        if invalid:
            raise ValidationError(f"Invalid campaign IDs: {', '.join(invalid)}")
        campaigns = [c for c in (get_campaign_by_id(s, i) for i in ids) if c is not None]
        if not campaigns:
            raise NotFoundError("No campaigns found for the provided IDs")
    else:
        campaigns = get_campaigns(s, CampaignFilters.from_args(request.args))
        if not campaigns:
            raise NotFoundError("No campaigns to export")

    data = export_campaigns(s, campaigns)
    s.rollback()
    current_app.logger.info(
        "EXPORT: %d campaigns request_id=%s", len(campaigns), getattr(g, "request_id", None)
    )
    return _send_workbook(data, export_filename())


@bp.get("/export/<campaign_id>")
@require_permission("campaigns.view")
def export_one(campaign_id: str):
    s = db_session()
    campaign = get_campaign_by_id(s, campaign_id)
    if campaign is None:
        raise NotFoundError("Campaign not found")
    data = export_campaigns(s, [campaign])
    s.rollback()
    return _send_workbook(data, export_filename(campaign.lego_campaign_code))
