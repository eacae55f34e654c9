"""
Operator workbook export, the inverse of parsers.xlsx.

Each sheet gets one row per campaign that has an event of the sheet's type. The
row holds the latest such event with its corrections applied, which is the
value an import compares against, so re-importing an export changes nothing.
"""
from __future__ import annotations

import io
import logging
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

from openpyxl import Workbook
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
from app.replay.modules.campaigns.projections import effective_event_data
from app.replay.utils import normalize_material_type, parse_bool, parse_date

from ..parsers.xlsx import SHEETS

logger = logging.getLogger(__name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# batch attribute -> event types filling that sheet; a row needs the first one
_SHEET_EVENTS: dict[str, tuple[str, ...]] = {
    "inbound_shipments": (INBOUND_SHIPMENT_RECORDED,),
    "granulation": (GRANULATION_COMPLETED,),
    "metal_removal": (METAL_REMOVAL_COMPLETED,),
    "polymer_purification": (POLYMER_PURIFICATION_COMPLETED,),
    "extrusion": (EXTRUSION_COMPLETED,),
    "transfer": (TRANSFER_TO_RGE_RECORDED,),
    "manufacturing": (MANUFACTURING_STARTED, MANUFACTURING_COMPLETED),
}

_COLUMN_LABELS = {
    **FIELD_LABELS,
    "campaignCode": "Campaign Code",
    "requestedArrivalDate": "Requested Arrival Date",
    "estimatedAbsKg": "Estimated ABS (kg)",
    "materialPortfolioLink": "Material Portfolio Link",
    "acceptedArrivalDate": "Accepted Arrival Date",
    "shipDate": "Ship Date",
    "arrivalDate": "Arrival Date",
    "ticketNumber": "Ticket Number",
    "shippingId": "Shipping ID",
    "materialType": "Material Type",
    "date": "Date",
    "site": "Site",
    "location": "Location",
    "process": "Process",
    "contaminationNotes": "Contamination Notes",
    "polymerComposition": "Polymer Composition",
    "outputPolymerComposition": "Output Polymer Composition",
    "wasteComposition": "Waste Composition",
    "yieldPercent": "Yield %",
    "lossPercent": "Loss %",
    "wasteCode": "Waste Code",
    "deliveryLocation": "Delivery Location",
    "deliveryDate": "Delivery Date",
    "notes": "Notes",
    "echaComplete": "ECHA Complete",
    "receivedDate": "Received Date",
    "receivedGrossWeightKg": "Received Gross Weight (kg)",
    "requestedPickupDate": "Requested Pickup Date",
    "actualPickupDate": "Actual Pickup Date",
}


def _cell(convert, raw: Any) -> Any:
    if raw is None:
        return None
    value = convert(raw)
    if value is None:
        return None
    if convert is parse_date:
        return date.fromisoformat(value)
    if convert is parse_bool:
        return "Yes" if value else "No"
    return value


def _sheet_values(keys: tuple[str, ...], history: list[EventRecord]) -> dict[str, Any] | None:
    latest: dict[str, EventRecord] = {}
    for ev in history:
        if ev.event_type in keys:
            latest[ev.event_type] = ev
    if keys[0] not in latest:
        return None
    values: dict[str, Any] = {}
    # the leading event type wins on shared fields
    for event_type in reversed(keys):
        if event_type in latest:
            values.update(effective_event_data(latest[event_type], history))
    return values


def _row(layout, campaign: CampaignProjection, values: Mapping[str, Any]) -> list[Any]:
    out: list[Any] = [None] * (max(col for _name, col, _conv in layout) + 1)
    for name, col, convert in layout:
        if name == "campaignCode":
            out[col] = campaign.lego_campaign_code
        elif name == "materialType":
            out[col] = normalize_material_type(values.get(name)) or campaign.material_type
        else:
            out[col] = _cell(convert, values.get(name))
    return out


def build_workbook(campaigns: Iterable[CampaignProjection], histories: Mapping[str, list[EventRecord]]) -> Workbook:
    """Workbook with every import sheet, laid out exactly as the importer reads it."""
    campaigns = list(campaigns)
    wb = Workbook()
    wb.remove(wb.active)
    for key, (sheet_name, layout) in SHEETS.items():
        ws = wb.create_sheet(sheet_name)
        header: list[Any] = [None] * (max(col for _name, col, _conv in layout) + 1)
        for name, col, _conv in layout:
            header[col] = _COLUMN_LABELS.get(name, name)
        ws.append(header)
        for campaign in campaigns:
            values = _sheet_values(_SHEET_EVENTS[key], histories.get(campaign.id, []))
            if values is not None:
                ws.append(_row(layout, campaign, values))
    return wb


def export_campaigns(s: Session, campaigns: Iterable[CampaignProjection]) -> bytes:
    campaigns = list(campaigns)
    histories = {c.id: get_events_for_stream(s, STREAM_CAMPAIGN, c.id) for c in campaigns}
    wb = build_workbook(campaigns, histories)
    buf = io.BytesIO()
    wb.save(buf)
    logger.info("EXPORT: wrote workbook campaigns=%d", len(campaigns))
    return buf.getvalue()


def export_filename(campaign_code: str | None = None, *, today: date | None = None) -> str:
    stamp = (today or date.today()).isoformat()
    if campaign_code:
        return f"campaign-{campaign_code}-{stamp}.xlsx"
    return f"campaigns-export-{stamp}.xlsx"
