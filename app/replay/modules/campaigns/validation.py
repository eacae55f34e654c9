from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from app.replay.constants import (
    CAMPAIGN_COMPLETED,
    CAMPAIGN_CREATED,
    ECHA_APPROVAL_RECORDED,
    EVENT_CORRECTED,
    EVENT_TYPES,
    EXTRUSION_COMPLETED,
    INBOUND_SHIPMENT_RECORDED,
    MANUFACTURING_COMPLETED,
    MANUFACTURING_STARTED,
    MATERIAL_TYPES,
    PROCESSING_EVENT_TYPES,
    RETURN_TO_LEGO_RECORDED,
    TRANSFER_TO_RGE_RECORDED,
)
from app.replay.errors import FieldError, ValidationError
from app.replay.ids import is_valid_event_id
from app.replay.utils import parse_date, parse_number

CAMPAIGN_CODE_RE = re.compile(r"^[A-Za-z0-9-]{3,128}$")

# (required strings, required numbers, required dates, optional numbers, optional dates)
_SHAPES: dict[str, tuple[tuple[str, ...], tuple[str, ...], tuple[str, ...], tuple[str, ...], tuple[str, ...]]] = {
    INBOUND_SHIPMENT_RECORDED: (
        ("carrier", "trackingRef"),
        ("grossWeightKg", "netWeightKg"),
        ("shipDate", "arrivalDate"),
        ("estimatedAbsKg",),
        (),
    ),
    ECHA_APPROVAL_RECORDED: (("approvedBy",), (), ("approvalDate",), (), ()),
    TRANSFER_TO_RGE_RECORDED: (
        ("trackingRef", "carrier"),
        (),
        ("shipDate",),
        ("receivedWeightKg",),
        ("receivedDate",),
    ),
    MANUFACTURING_STARTED: (("poNumber",), ("poQuantity",), ("startDate",), (), ()),
    MANUFACTURING_COMPLETED: ((), ("actualQuantity",), ("endDate",), (), ()),
    RETURN_TO_LEGO_RECORDED: (("trackingRef", "carrier"), ("quantity",), ("shipDate",), (), ("receivedDate",)),
    CAMPAIGN_COMPLETED: ((), (), (), (), ()),
}
for _t in PROCESSING_EVENT_TYPES:
    _SHAPES[_t] = (("ticketNumber",), ("startingWeightKg", "outputWeightKg"), (), ("processHours",), ())
_SHAPES[EXTRUSION_COMPLETED] = (
    ("ticketNumber", "batchNumber"),
    ("startingWeightKg", "outputWeightKg"),
    (),
    ("processHours",),
    (),
)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _check_number(data: Mapping[str, Any], field: str, errors: list[FieldError], *, required: bool) -> None:
    value = data.get(field)
    if _is_blank(value):
        if required:
            errors.append(FieldError(field, f"{field} is required"))
        return
    num = parse_number(value)
    if num is None:
        errors.append(FieldError(field, f"{field} must be a valid number"))
    elif num < 0:
        errors.append(FieldError(field, f"{field} must be a positive number"))


def _check_date(data: Mapping[str, Any], field: str, errors: list[FieldError], *, required: bool) -> None:
    value = data.get(field)
    if _is_blank(value):
        if required:
            errors.append(FieldError(field, f"{field} is required"))
        return
    if parse_date(value) is None:
        errors.append(FieldError(field, f"{field} must be in YYYY-MM-DD format"))


def _validate_created(data: Mapping[str, Any]) -> list[FieldError]:
    errors: list[FieldError] = []
    code = data.get("legoCampaignCode")
    if _is_blank(code):
        errors.append(FieldError("legoCampaignCode", "legoCampaignCode is required"))
    elif not isinstance(code, str) or not CAMPAIGN_CODE_RE.match(code.strip()):
        errors.append(
            FieldError("legoCampaignCode", "Campaign code must be at least 3 characters of letters, numbers, and dashes")
        )
    material = data.get("materialType")
    if _is_blank(material):
        errors.append(FieldError("materialType", "materialType is required"))
    elif str(material).strip().upper() not in MATERIAL_TYPES:
        errors.append(FieldError("materialType", "materialType must be PI or PCR"))
    description = data.get("description")
    if description is not None and not isinstance(description, str):
        errors.append(FieldError("description", "description must be text"))
    return errors


_NUMERIC_SUFFIXES = ("Kg", "Quantity", "quantity", "Hours", "Percent")


def _check_corrected_value(field: str, now: Any) -> list[FieldError]:
    """`now` must be a valid value for the field it replaces."""
    key = f"changes.{field}.now"
    if field == "legoCampaignCode":
        if not isinstance(now, str) or not CAMPAIGN_CODE_RE.match(now.strip()):
            return [FieldError(key, "Campaign code must be at least 3 characters of letters, numbers, and dashes")]
    elif field == "materialType":
        if _is_blank(now) or str(now).strip().upper() not in MATERIAL_TYPES:
            return [FieldError(key, "materialType must be PI or PCR")]
    elif field.endswith(_NUMERIC_SUFFIXES):
        errors: list[FieldError] = []
        _check_number({key: now}, key, errors, required=False)
        return errors
    return []


def _validate_correction(data: Mapping[str, Any]) -> list[FieldError]:
    errors: list[FieldError] = []
    if not is_valid_event_id(data.get("correctsEventId")):
        errors.append(FieldError("correctsEventId", "correctsEventId must be a valid event id"))
    corrects_type = data.get("correctsEventType")
    if corrects_type not in EVENT_TYPES or corrects_type == EVENT_CORRECTED:
        errors.append(FieldError("correctsEventType", "correctsEventType must be a correctable event type"))
    if _is_blank(data.get("reason")):
        errors.append(FieldError("reason", "reason is required"))
    changes = data.get("changes")
    if not isinstance(changes, Mapping) or not changes:
        errors.append(FieldError("changes", "changes must be a non-empty object"))
    else:
        for field, change in changes.items():
            if not isinstance(change, Mapping) or "now" not in change:
                errors.append(FieldError(f"changes.{field}", "each change needs {was, now}"))
                continue
            errors.extend(_check_corrected_value(field, change["now"]))
    return errors


def validate_event_payload(event_type: str, data: Any) -> list[FieldError]:
    """Return a list of field errors; empty when the payload is acceptable."""
    if event_type not in EVENT_TYPES:
        return [FieldError("eventType", f"Unknown event type: {event_type}")]
    if not isinstance(data, Mapping):
        return [FieldError("eventData", "eventData must be an object")]
    if event_type == CAMPAIGN_CREATED:
        return _validate_created(data)
    if event_type == EVENT_CORRECTED:
        return _validate_correction(data)

    strings, numbers, dates, opt_numbers, opt_dates = _SHAPES[event_type]
    errors: list[FieldError] = []
    for field in strings:
        if _is_blank(data.get(field)):
            errors.append(FieldError(field, f"{field} is required"))
    for field in numbers:
        _check_number(data, field, errors, required=True)
    for field in opt_numbers:
        _check_number(data, field, errors, required=False)
    for field in dates:
        _check_date(data, field, errors, required=True)
    for field in opt_dates:
        _check_date(data, field, errors, required=False)
    return errors


def require_valid_payload(event_type: str, data: Any) -> None:
    errors = validate_event_payload(event_type, data)
    if errors:
        raise ValidationError(f"Invalid {event_type} payload.", errors)
