"""
Import preview entities.

A preview is ephemeral: it is built by the reconciler, shown to the operator,
and posted back (as JSON) together with the selected ids to be applied.
Keys of the serialized form are snake_case; event payloads keep the camelCase
field names they are stored with.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from app.replay.errors import CampaignError, PartialApplyError, ValidationError

SHEET_KEYS = (
    "inbound_shipments",
    "granulation",
    "metal_removal",
    "polymer_purification",
    "extrusion",
    "transfer",
    "manufacturing",
)


@dataclass
class ImportBatch:
    """Parsed spreadsheet rows grouped by sheet. Each row is a dict with at least `campaignCode`."""

    inbound_shipments: list[dict] = field(default_factory=list)
    granulation: list[dict] = field(default_factory=list)
    metal_removal: list[dict] = field(default_factory=list)
    polymer_purification: list[dict] = field(default_factory=list)
    extrusion: list[dict] = field(default_factory=list)
    transfer: list[dict] = field(default_factory=list)
    manufacturing: list[dict] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(len(getattr(self, k)) for k in SHEET_KEYS)

    def to_dict(self) -> dict:
        return {k: list(getattr(self, k)) for k in SHEET_KEYS}

    @classmethod
    def from_dict(cls, data: Any) -> "ImportBatch":
        if not isinstance(data, dict):
            raise ValidationError("Import batch must be an object keyed by sheet.")
        kwargs: dict[str, list[dict]] = {}
        for key in SHEET_KEYS:
            rows = data.get(key) or []
            if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
                raise ValidationError(f"{key} must be a list of row objects.")
            for r in rows:
                n = r.get("rowNumber")
                if n is not None and (not isinstance(n, int) or isinstance(n, bool) or n < 1):
                    raise ValidationError(f"{key}: rowNumber must be a positive integer, got {n!r}.")
            kwargs[key] = rows
        return cls(**kwargs)


@dataclass(frozen=True)
class FieldChange:
    field: str
    label: str
    current: Any
    proposed: Any

    def to_dict(self) -> dict:
        return {"field": self.field, "label": self.label, "current": self.current, "proposed": self.proposed}

    @classmethod
    def from_dict(cls, d: dict) -> "FieldChange":
        return cls(field=d["field"], label=d.get("label") or d["field"], current=d.get("current"), proposed=d.get("proposed"))


@dataclass
class CreatePreview:
    id: str
    campaign_code: str
    material_type: str
    sheet: str
    row_number: int
    campaign_data: dict
    inbound_data: dict | None = None
    selected: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campaign_code": self.campaign_code,
            "material_type": self.material_type,
            "sheet": self.sheet,
            "row_number": self.row_number,
            "campaign_data": self.campaign_data,
            "inbound_data": self.inbound_data,
            "selected": self.selected,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CreatePreview":
        return cls(
            id=d["id"],
            campaign_code=d["campaign_code"],
            material_type=d["material_type"],
            sheet=d.get("sheet") or "",
            row_number=int(d.get("row_number") or 0),
            campaign_data=dict(d["campaign_data"]),
            inbound_data=dict(d["inbound_data"]) if d.get("inbound_data") else None,
            selected=bool(d.get("selected", True)),
        )


@dataclass
class EventPreview:
    id: str
    campaign_id: str | None  # None when the campaign is created earlier in the same import
    campaign_code: str
    event_type: str
    event_data: dict
    sheet: str
    row_number: int
    selected: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "campaign_code": self.campaign_code,
            "event_type": self.event_type,
            "event_data": self.event_data,
            "sheet": self.sheet,
            "row_number": self.row_number,
            "selected": self.selected,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "EventPreview":
        return cls(
            id=d["id"],
            campaign_id=d.get("campaign_id"),
            campaign_code=d["campaign_code"],
            event_type=d["event_type"],
            event_data=dict(d["event_data"]),
            sheet=d.get("sheet") or "",
            row_number=int(d.get("row_number") or 0),
            selected=bool(d.get("selected", True)),
        )


@dataclass
class UpdatePreview:
    id: str
    campaign_id: str
    campaign_code: str
    corrects_event_id: str
    corrects_event_type: str
    changes: list[FieldChange]
    sheet: str
    row_number: int
    selected: bool = True

    def correction_payload(self) -> dict:
        return {
            "correctsEventId": self.corrects_event_id,
            "correctsEventType": self.corrects_event_type,
            "reason": f"Imported from spreadsheet ({self.sheet})",
            "changes": {c.field: {"was": c.current, "now": c.proposed} for c in self.changes},
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "campaign_code": self.campaign_code,
            "corrects_event_id": self.corrects_event_id,
            "corrects_event_type": self.corrects_event_type,
            "changes": [c.to_dict() for c in self.changes],
            "sheet": self.sheet,
            "row_number": self.row_number,
            "selected": self.selected,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "UpdatePreview":
        return cls(
            id=d["id"],
            campaign_id=d["campaign_id"],
            campaign_code=d["campaign_code"],
            corrects_event_id=d["corrects_event_id"],
            corrects_event_type=d["corrects_event_type"],
            changes=[FieldChange.from_dict(c) for c in d.get("changes") or []],
            sheet=d.get("sheet") or "",
            row_number=int(d.get("row_number") or 0),
            selected=bool(d.get("selected", True)),
        )


@dataclass(frozen=True)
class SkippedRow:
    id: str
    sheet: str
    row_number: int
    campaign_code: str | None
    reason: str

    # informational only; never applied
    selected = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sheet": self.sheet,
            "row_number": self.row_number,
            "campaign_code": self.campaign_code,
            "reason": self.reason,
            "selected": False,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SkippedRow":
        return cls(
            id=d["id"],
            sheet=d.get("sheet") or "",
            row_number=int(d.get("row_number") or 0),
            campaign_code=d.get("campaign_code"),
            reason=d.get("reason") or "",
        )


@dataclass
class ImportPreview:
    creates: list[CreatePreview] = field(default_factory=list)
    events: list[EventPreview] = field(default_factory=list)
    updates: list[UpdatePreview] = field(default_factory=list)
    skipped: list[SkippedRow] = field(default_factory=list)
    total_rows: int = 0

    @property
    def summary(self) -> dict:
        return {
            "total_rows": self.total_rows,
            "new_campaigns": len(self.creates),
            "new_events": len(self.events),
            "updates": len(self.updates),
            "skipped": len(self.skipped),
        }

    def to_dict(self) -> dict:
        return {
            "creates": [c.to_dict() for c in self.creates],
            "events": [e.to_dict() for e in self.events],
            "updates": [u.to_dict() for u in self.updates],
            "skipped": [sk.to_dict() for sk in self.skipped],
            "summary": self.summary,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @classmethod
    def from_dict(cls, data: Any) -> "ImportPreview":
        if not isinstance(data, dict):
            raise ValidationError("preview must be an object.")
        try:
            return cls(
                creates=[CreatePreview.from_dict(c) for c in data.get("creates") or []],
                events=[EventPreview.from_dict(e) for e in data.get("events") or []],
                updates=[UpdatePreview.from_dict(u) for u in data.get("updates") or []],
                skipped=[SkippedRow.from_dict(sk) for sk in data.get("skipped") or []],
                total_rows=int((data.get("summary") or {}).get("total_rows") or 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed preview: {e}") from e


@dataclass
class ApplyResult:
    created: list[dict] = field(default_factory=list)
    events: list[dict] = field(default_factory=list)
    corrections: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return len(self.created) + len(self.events) + len(self.corrections)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def status(self) -> str:
        if not self.errors:
            return "success"
        return "partial" if self.writes else "failed"

    def add_error(self, item_id: str, exc: Exception) -> None:
        if isinstance(exc, CampaignError) and exc.public:
            message = exc.message
        else:
            # internal failures stay opaque to the operator
            message = "Internal error while applying this item."
        self.errors.append({"id": item_id, "error": message, "error_type": type(exc).__name__})

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialApplyError(f"{len(self.errors)} import item(s) failed ({self.status}).", self.errors)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "created": self.created,
            "events": self.events,
            "corrections": self.corrections,
            "errors": self.errors,
        }
