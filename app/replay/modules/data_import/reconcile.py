"""
Spreadsheet reconciliation.

Classifies every imported row against existing campaigns and their event
history as Create / New event / Update (correction) / Skip, producing an
ImportPreview. Read-only: nothing is written until the preview is applied.

Sheets are processed in a fixed order and rows in sheet order; preview ids are
per-batch counters and missing dates default to `as_of`, so the same batch
against the same history always yields the same preview.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from app.replay.constants import (
    EXTRUSION_COMPLETED,
    FIELD_LABELS,
    GRANULATION_COMPLETED,
    INBOUND_SHIPMENT_RECORDED,
    MANUFACTURING_COMPLETED,
    MANUFACTURING_STARTED,
    METAL_REMOVAL_COMPLETED,
    POLYMER_PURIFICATION_COMPLETED,
    STREAM_CAMPAIGN,
    TRANSFER_TO_RGE_RECORDED,
)
from app.replay.modules.campaigns.event_store import get_events_for_stream
from app.replay.modules.campaigns.models import CampaignProjection, EventRecord
from app.replay.modules.campaigns.projections import effective_event_data, get_campaigns_by_codes
from app.replay.utils import normalize_material_type, normalize_text, parse_date, parse_number, weights_match

from .preview import (
    SHEET_KEYS,
    CreatePreview,
    EventPreview,
    FieldChange,
    ImportBatch,
    ImportPreview,
    SkippedRow,
    UpdatePreview,
)

logger = logging.getLogger(__name__)

SKIP_MISSING_CODE = "missing campaign code"
SKIP_NOT_FOUND = "campaign not found"
SKIP_DUPLICATE = "duplicate, no changes"
SKIP_IN_BATCH_CONFLICT = "conflicts with an earlier row in this import"
SKIP_NO_WEIGHT = "missing weight data"
SKIP_NO_SHIPPING = "missing tracking reference and carrier"
SKIP_NO_PO = "missing PO number"

NUMERIC_FIELDS = frozenset(
    {
        "grossWeightKg",
        "netWeightKg",
        "estimatedAbsKg",
        "startingWeightKg",
        "outputWeightKg",
        "receivedWeightKg",
        "processHours",
        "poQuantity",
        "actualQuantity",
        "quantity",
    }
)
DATE_FIELDS = frozenset({"shipDate", "arrivalDate", "receivedDate", "startDate", "endDate"})

# (payload or None, skip reason when None)
Builder = Callable[[dict, str], tuple[dict | None, str | None]]


def _value(field_name: str, raw: Any) -> Any:
    if field_name in NUMERIC_FIELDS:
        return parse_number(raw)
    if field_name in DATE_FIELDS:
        return parse_date(raw)
    return normalize_text(raw)


def _put_optional(payload: dict, row: dict, *names: str) -> None:
    for name in names:
        v = _value(name, row.get(name))
        if v is not None:
            payload[name] = v


def _build_inbound(row: dict, today: str) -> tuple[dict | None, str | None]:
    gross = _value("grossWeightKg", row.get("grossWeightKg"))
    net = _value("netWeightKg", row.get("netWeightKg"))
    if gross is None and net is None:
        return None, SKIP_NO_WEIGHT
    payload = {
        "grossWeightKg": gross or 0,
        "netWeightKg": net or 0,
        "carrier": _value("carrier", row.get("carrier")) or "Unknown",
        "trackingRef": _value("trackingRef", row.get("trackingRef")) or "Unknown",
        "shipDate": _value("shipDate", row.get("shipDate")) or today,
        "arrivalDate": _value("arrivalDate", row.get("arrivalDate")) or today,
    }
    _put_optional(payload, row, "estimatedAbsKg")
    return payload, None


def _processing_builder(*extras: str, batch_number: bool = False) -> Builder:
    def build(row: dict, today: str) -> tuple[dict | None, str | None]:
        start = _value("startingWeightKg", row.get("startingWeightKg"))
        out = _value("outputWeightKg", row.get("outputWeightKg"))
        if start is None and out is None:
            return None, SKIP_NO_WEIGHT
        payload = {
            "ticketNumber": _value("ticketNumber", row.get("ticketNumber")) or "IMPORT",
            "startingWeightKg": start or 0,
            "outputWeightKg": out or 0,
        }
        if batch_number:
            payload["batchNumber"] = _value("batchNumber", row.get("batchNumber")) or "IMPORT"
        _put_optional(payload, row, "processHours", "polymerComposition", "wasteCode", "notes", *extras)
        return payload, None

    return build


def _build_transfer(row: dict, today: str) -> tuple[dict | None, str | None]:
    tracking = _value("trackingRef", row.get("trackingRef"))
    carrier = _value("carrier", row.get("carrier"))
    if tracking is None and carrier is None:
        return None, SKIP_NO_SHIPPING
    payload = {
        "trackingRef": tracking or "Unknown",
        "carrier": carrier or "Unknown",
        "shipDate": _value("shipDate", row.get("shipDate")) or _value("receivedDate", row.get("receivedDate")) or today,
    }
    _put_optional(payload, row, "receivedDate", "receivedWeightKg")
    return payload, None


def _build_mfg_started(row: dict, today: str) -> tuple[dict | None, str | None]:
    po = _value("poNumber", row.get("poNumber"))
    if po is None:
        return None, SKIP_NO_PO
    return {
        "poNumber": po,
        "poQuantity": _value("poQuantity", row.get("poQuantity")) or 0,
        "startDate": _value("startDate", row.get("startDate")) or today,
    }, None


def _build_mfg_completed(row: dict, today: str) -> tuple[dict | None, str | None]:
    return {
        "endDate": _value("endDate", row.get("endDate")),
        "actualQuantity": _value("actualQuantity", row.get("actualQuantity") or row.get("poQuantity")) or 0,
    }, None


@dataclass(frozen=True)
class EventRule:
    event_type: str
    build: Builder
    compare: tuple[str, ...]
    applies: Callable[[dict], bool] = lambda row: True
    aliases: dict[str, str] = field(default_factory=dict)

    def proposed(self, row: dict) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in self.compare:
            raw = row.get(f)
            if raw is None and f in self.aliases:
                raw = row.get(self.aliases[f])
            out[f] = _value(f, raw)
        return out


@dataclass(frozen=True)
class SheetRule:
    key: str
    label: str
    events: tuple[EventRule, ...]
    origin: bool = False


_PROCESSING_COMPARE = ("startingWeightKg", "outputWeightKg", "processHours")

SHEET_RULES = (
    SheetRule(
        "inbound_shipments",
        "Inbound Shipment",
        (EventRule(INBOUND_SHIPMENT_RECORDED, _build_inbound, ("grossWeightKg", "netWeightKg", "carrier", "trackingRef")),),
        origin=True,
    ),
    SheetRule(
        "granulation",
        "Granulation",
        (EventRule(GRANULATION_COMPLETED, _processing_builder("contaminationNotes"), _PROCESSING_COMPARE),),
        origin=True,
    ),
    SheetRule(
        "metal_removal",
        "Metal Removal",
        (EventRule(METAL_REMOVAL_COMPLETED, _processing_builder(), _PROCESSING_COMPARE),),
    ),
    SheetRule(
        "polymer_purification",
        "Polymer purification",
        (EventRule(POLYMER_PURIFICATION_COMPLETED, _processing_builder("wasteComposition"), _PROCESSING_COMPARE),),
    ),
    SheetRule(
        "extrusion",
        "Extrusion",
        (
            EventRule(
                EXTRUSION_COMPLETED,
                _processing_builder(batch_number=True),
                ("startingWeightKg", "outputWeightKg", "batchNumber"),
            ),
        ),
    ),
    SheetRule(
        "transfer",
        "Transfer MBA-RGE",
        (EventRule(TRANSFER_TO_RGE_RECORDED, _build_transfer, ("trackingRef", "carrier", "receivedWeightKg")),),
    ),
    SheetRule(
        "manufacturing",
        "RGE Manufacturing",
        (
            EventRule(MANUFACTURING_STARTED, _build_mfg_started, ("poNumber", "poQuantity", "startDate")),
            EventRule(
                MANUFACTURING_COMPLETED,
                _build_mfg_completed,
                ("endDate", "actualQuantity"),
                applies=lambda row: _value("endDate", row.get("endDate")) is not None,
                aliases={"actualQuantity": "poQuantity"},
            ),
        ),
    ),
)


def _row_number(row: dict, idx: int) -> int:
    # row 1 is the header
    value = row.get("rowNumber")
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return idx + 2


class _Reconciler:
    def __init__(
        self,
        s: Session,
        batch: ImportBatch,
        *,
        today: str,
        weight_tolerance_kg: float,
        default_material_type: str,
    ):
        self.s = s
        self.batch = batch
        self.today = today
        self.tolerance = weight_tolerance_kg
        self.default_material_type = default_material_type
        self.preview = ImportPreview(total_rows=batch.total_rows)
        self.counters = {"create": 0, "event": 0, "update": 0, "skip": 0}
        self.existing: dict[str, CampaignProjection] = {}
        self.histories: dict[str, list[EventRecord]] = {}
        self.pending: dict[str, CreatePreview] = {}
        # effective compared values already claimed by earlier rows, per (code, event type)
        self.seen: dict[tuple[str, str], dict[str, Any]] = {}

    def _next_id(self, prefix: str) -> str:
        self.counters[prefix] += 1
        return f"{prefix}_{self.counters[prefix]}"

    def _skip(self, rule: SheetRule, row_number: int, code: str | None, reason: str) -> None:
        self.preview.skipped.append(
            SkippedRow(id=self._next_id("skip"), sheet=rule.label, row_number=row_number, campaign_code=code, reason=reason)
        )

    def _history(self, campaign_id: str) -> list[EventRecord]:
        if campaign_id not in self.histories:
            self.histories[campaign_id] = get_events_for_stream(self.s, STREAM_CAMPAIGN, campaign_id)
        return self.histories[campaign_id]

    def _prior(self, campaign_id: str, rule: EventRule) -> tuple[EventRecord, dict[str, Any]] | None:
        """Most recent event of the rule's type, with later corrections applied on top."""
        history = self._history(campaign_id)
        matches = [ev for ev in history if ev.event_type == rule.event_type]
        if not matches:
            return None
        prior = matches[-1]
        values = effective_event_data(prior, history)
        return prior, {f: _value(f, values.get(f)) for f in rule.compare}

    def _same(self, field_name: str, current: Any, proposed: Any) -> bool:
        if current is None:
            return False
        if field_name.endswith("Kg"):
            return weights_match(current, proposed, self.tolerance)
        return current == proposed

    def _diff(self, rule: EventRule, current: dict[str, Any], proposed: dict[str, Any]) -> list[FieldChange]:
        changes = []
        for f in rule.compare:
            p = proposed.get(f)
            if p is None:
                continue  # blank cells never count as changes
            if not self._same(f, current.get(f), p):
                changes.append(FieldChange(field=f, label=FIELD_LABELS.get(f, f), current=current.get(f), proposed=p))
        return changes

    def _material_type(self, code: str, row: dict) -> str:
        mt = normalize_material_type(row.get("materialType"))
        if mt:
            return mt
        for g in self.batch.granulation:
            if normalize_text(g.get("campaignCode")) == code:
                mt = normalize_material_type(g.get("materialType"))
                if mt:
                    return mt
        return self.default_material_type

    def _create(self, rule: SheetRule, row: dict, code: str, row_number: int) -> None:
        material = self._material_type(code, row)
        create = CreatePreview(
            id=self._next_id("create"),
            campaign_code=code,
            material_type=material,
            sheet=rule.label,
            row_number=row_number,
            campaign_data={"legoCampaignCode": code, "materialType": material},
        )
        if rule.key == "inbound_shipments":
            inbound_rule = rule.events[0]
            payload, _reason = inbound_rule.build(row, self.today)
            if payload is not None:
                create.inbound_data = payload
                self.seen[(code, inbound_rule.event_type)] = {f: _value(f, payload.get(f)) for f in inbound_rule.compare}
        self.pending[code] = create
        self.preview.creates.append(create)

    def _classify(
        self,
        sheet: SheetRule,
        rule: EventRule,
        row: dict,
        code: str,
        campaign: CampaignProjection | None,
        row_number: int,
    ) -> None:
        payload, reason = rule.build(row, self.today)
        if payload is None:
            self._skip(sheet, row_number, code, reason or SKIP_NO_WEIGHT)
            return
        proposed = rule.proposed(row)
        key = (code, rule.event_type)

        if key in self.seen:
            earlier = self.seen[key]
            conflict = self._diff(rule, earlier, proposed)
            self._skip(sheet, row_number, code, SKIP_IN_BATCH_CONFLICT if conflict else SKIP_DUPLICATE)
            return

        prior = self._prior(campaign.id, rule) if campaign is not None else None
        if prior is None:
            self.preview.events.append(
                EventPreview(
                    id=self._next_id("event"),
                    campaign_id=campaign.id if campaign is not None else None,
                    campaign_code=code,
                    event_type=rule.event_type,
                    event_data=payload,
                    sheet=sheet.label,
                    row_number=row_number,
                )
            )
            self.seen[key] = {f: _value(f, payload.get(f)) for f in rule.compare}
            return

        prior_event, current = prior
        changes = self._diff(rule, current, proposed)
        self.seen[key] = {**current, **{c.field: c.proposed for c in changes}}
        if not changes:
            self._skip(sheet, row_number, code, SKIP_DUPLICATE)
            return
        self.preview.updates.append(
            UpdatePreview(
                id=self._next_id("update"),
                campaign_id=prior_event.stream_id,
                campaign_code=code,
                corrects_event_id=prior_event.id,
                corrects_event_type=prior_event.event_type,
                changes=changes,
                sheet=sheet.label,
                row_number=row_number,
            )
        )

    def run(self) -> ImportPreview:
        codes = {
            normalize_text(row.get("campaignCode"))
            for key in SHEET_KEYS
            for row in getattr(self.batch, key)
        }
        self.existing = get_campaigns_by_codes(self.s, [c for c in codes if c])

        for sheet in SHEET_RULES:
            for idx, row in enumerate(getattr(self.batch, sheet.key)):
                row_number = _row_number(row, idx)
                code = normalize_text(row.get("campaignCode"))
                if not code:
                    self._skip(sheet, row_number, None, SKIP_MISSING_CODE)
                    continue

                campaign = self.existing.get(code)
                if campaign is None and code not in self.pending:
                    if not sheet.origin:
                        self._skip(sheet, row_number, code, SKIP_NOT_FOUND)
                        continue
                    self._create(sheet, row, code, row_number)
                    if sheet.key == "inbound_shipments":
                        # the inbound payload rides on the create
                        continue

                for rule in sheet.events:
                    if rule.applies(row):
                        self._classify(sheet, rule, row, code, campaign, row_number)

        logger.info("IMPORT: reconciled %s", self.preview.summary)
        return self.preview


def reconcile(
    s: Session,
    batch: ImportBatch,
    *,
    as_of: date | None = None,
    weight_tolerance_kg: float = 0.01,
    default_material_type: str = "PCR",
) -> ImportPreview:
    """
    Build an import preview. Weights compare within `weight_tolerance_kg`;
    every other field compares exactly after normalization.
    """
    today = (as_of or date.today()).isoformat()
    return _Reconciler(
        s,
        batch,
        today=today,
        weight_tolerance_kg=weight_tolerance_kg,
        default_material_type=default_material_type,
    ).run()
