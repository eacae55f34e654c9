from __future__ import annotations

import io
import logging
import zipfile
from collections.abc import Callable
from dataclasses import dataclass

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from app.replay.errors import ValidationError
from app.replay.utils import normalize_material_type, normalize_text, parse_bool, parse_date, parse_number

from ..preview import ImportBatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SheetRowError:
    sheet: str
    row_number: int
    message: str

    def to_dict(self) -> dict:
        return {"sheet": self.sheet, "row_number": self.row_number, "message": self.message}


def _text(v):
    return normalize_text(v)


# Column layouts of the operator workbook: (field, column index, converter)
_INBOUND = (
    ("campaignCode", 0, _text),
    ("requestedArrivalDate", 1, parse_date),
    ("grossWeightKg", 2, parse_number),
    ("netWeightKg", 3, parse_number),
    ("estimatedAbsKg", 4, parse_number),
    ("materialPortfolioLink", 5, _text),
    ("acceptedArrivalDate", 6, parse_date),
    ("trackingRef", 7, _text),
    ("carrier", 8, _text),
    ("shipDate", 9, parse_date),
    ("arrivalDate", 10, parse_date),
)

_GRANULATION = (
    ("ticketNumber", 0, _text),
    ("shippingId", 1, _text),
    ("materialType", 2, normalize_material_type),
    ("campaignCode", 3, _text),
    ("date", 4, parse_date),
    ("site", 5, _text),
    ("location", 6, _text),
    ("process", 7, _text),
    ("startingWeightKg", 8, parse_number),
    ("outputWeightKg", 9, parse_number),
    ("contaminationNotes", 10, _text),
    ("polymerComposition", 11, _text),
    ("processHours", 12, parse_number),
    ("yieldPercent", 13, parse_number),
    ("lossPercent", 14, parse_number),
    ("wasteCode", 15, _text),
    ("deliveryLocation", 16, _text),
    ("deliveryDate", 17, parse_date),
    ("notes", 18, _text),
)

# Metal removal, purification and extrusion share their first columns
_STEP_HEAD = (
    ("ticketNumber", 0, _text),
    ("campaignCode", 1, _text),
    ("date", 2, parse_date),
    ("site", 3, _text),
    ("location", 4, _text),
    ("process", 5, _text),
    ("startingWeightKg", 6, parse_number),
    ("polymerComposition", 7, _text),
    ("outputWeightKg", 8, parse_number),
)

_METAL_REMOVAL = _STEP_HEAD + (
    ("processHours", 9, parse_number),
    ("yieldPercent", 10, parse_number),
    ("lossPercent", 11, parse_number),
    ("wasteCode", 12, _text),
    ("deliveryLocation", 13, _text),
    ("notes", 14, _text),
)

_PURIFICATION = _STEP_HEAD + (
    ("outputPolymerComposition", 9, _text),
    ("wasteComposition", 10, _text),
    ("processHours", 11, parse_number),
    ("yieldPercent", 12, parse_number),
    ("lossPercent", 13, parse_number),
    ("wasteCode", 14, _text),
    ("deliveryLocation", 15, _text),
    ("notes", 16, _text),
)

_EXTRUSION = _STEP_HEAD + (
    ("processHours", 9, parse_number),
    ("yieldPercent", 10, parse_number),
    ("lossPercent", 11, parse_number),
    ("batchNumber", 12, _text),
    ("deliveryLocation", 13, _text),
    ("echaComplete", 14, parse_bool),
    ("deliveryDate", 15, parse_date),
    ("notes", 16, _text),
)

_TRANSFER = (
    ("campaignCode", 0, _text),
    ("trackingRef", 1, _text),
    ("carrier", 2, _text),
    ("receivedDate", 3, parse_date),
    ("receivedGrossWeightKg", 4, parse_number),
    ("receivedWeightKg", 5, parse_number),
)

_MANUFACTURING = (
    ("campaignCode", 0, _text),
    ("poNumber", 1, _text),
    ("poQuantity", 2, parse_number),
    ("startDate", 3, parse_date),
    ("endDate", 4, parse_date),
    ("requestedPickupDate", 5, parse_date),
    ("actualPickupDate", 6, parse_date),
)

# batch attribute -> (sheet name, layout)
SHEETS: dict[str, tuple[str, tuple[tuple[str, int, Callable], ...]]] = {
    "inbound_shipments": ("Inbound Shipment", _INBOUND),
    "granulation": ("Granulation", _GRANULATION),
    "metal_removal": ("Metal Removal", _METAL_REMOVAL),
    "polymer_purification": ("Polymer purification", _PURIFICATION),
    "extrusion": ("Extrusion", _EXTRUSION),
    "transfer": ("Transfer MBA-RGE", _TRANSFER),
    "manufacturing": ("RGE Manufacturing", _MANUFACTURING),
}


def _find_sheet(wb, name: str):
    wanted = name.strip().lower()
    for ws in wb.worksheets:
        if ws.title.strip().lower() == wanted:
            return ws
    return None


def _parse_sheet(ws, sheet_name: str, layout) -> tuple[list[dict], list[SheetRowError]]:
    rows: list[dict] = []
    errors: list[SheetRowError] = []
    code_col = next(col for name, col, _ in layout if name == "campaignCode")
    for idx, values in enumerate(ws.iter_rows(min_row=2, values_only=True), start=2):  # 1 = header
        if not values or all(v is None or str(v).strip() == "" for v in values):
            continue
        code = normalize_text(values[code_col] if code_col < len(values) else None)
        if not code:
            errors.append(SheetRowError(sheet_name, idx, "Missing campaign code; row ignored."))
            continue
        row: dict = {"rowNumber": idx}
        for name, col, convert in layout:
            raw = values[col] if col < len(values) else None
            value = convert(raw)
            if value is None and raw is not None and normalize_text(raw) is not None and convert is not _text:
                errors.append(SheetRowError(sheet_name, idx, f"Could not read {name} from {raw!r}."))
            if value is not None:
                row[name] = value
        rows.append(row)
    return rows, errors


def parse_workbook(file_bytes: bytes) -> tuple[ImportBatch, list[SheetRowError]]:
    """
    Parse the operator workbook into an ImportBatch.

    Sheets are matched by name (case-insensitive); missing sheets yield no rows.
    Returns:
      (batch, errors)
    Where errors are non-fatal row problems (unreadable cells, missing codes).
    """
    try:
        wb = load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise ValidationError(f"Could not read workbook: {e}") from e

    batch = ImportBatch()
    errors: list[SheetRowError] = []
    try:
        for key, (sheet_name, layout) in SHEETS.items():
            ws = _find_sheet(wb, sheet_name)
            if ws is None:
                logger.info("IMPORT: workbook has no %r sheet", sheet_name)
                continue
            rows, row_errors = _parse_sheet(ws, sheet_name, layout)
            setattr(batch, key, rows)
            errors.extend(row_errors)
    finally:
        wb.close()
    logger.info("IMPORT: parsed workbook rows=%d errors=%d", batch.total_rows, len(errors))
    return batch, errors
