"""
Central constants for the campaign tracker.
"""
from __future__ import annotations

STREAM_CAMPAIGN = "campaign"

MATERIAL_TYPES = frozenset({"PI", "PCR"})

# Statuses in order of progression
CAMPAIGN_STATUSES = (
    "created",
    "inbound_shipment_recorded",
    "granulation_complete",
    "metal_removal_complete",
    "polymer_purification_complete",
    "extrusion_complete",
    "echa_approved",
    "transferred_to_rge",
    "manufacturing_started",
    "manufacturing_complete",
    "returned_to_lego",
    "completed",
)
STATUS_ORDER = {status: i for i, status in enumerate(CAMPAIGN_STATUSES)}

STATUS_LABELS = {
    "created": "Created",
    "inbound_shipment_recorded": "Inbound Shipment",
    "granulation_complete": "Granulation",
    "metal_removal_complete": "Metal Removal",
    "polymer_purification_complete": "Purification",
    "extrusion_complete": "Extrusion",
    "echa_approved": "ECHA Approved",
    "transferred_to_rge": "At RGE",
    "manufacturing_started": "Manufacturing",
    "manufacturing_complete": "Mfg Complete",
    "returned_to_lego": "Returned",
    "completed": "Completed",
}

# current_step shown once a status is reached
STEP_NAMES = {
    "created": "Created",
    "inbound_shipment_recorded": "Inbound Shipment",
    "granulation_complete": "Granulation",
    "metal_removal_complete": "Metal Removal",
    "polymer_purification_complete": "Polymer Purification",
    "extrusion_complete": "Extrusion",
    "echa_approved": "ECHA Approved",
    "transferred_to_rge": "Transferred to RGE",
    "manufacturing_started": "Manufacturing",
    "manufacturing_complete": "Manufacturing Complete",
    "returned_to_lego": "Returned to LEGO",
    "completed": "Completed",
}

# next_expected_step after a status is reached
NEXT_STEP = {
    "created": "Inbound Shipment",
    "inbound_shipment_recorded": "Granulation",
    "granulation_complete": "Metal Removal",
    "metal_removal_complete": "Polymer Purification",
    "polymer_purification_complete": "Extrusion",
    "extrusion_complete": "ECHA Approval",
    "echa_approved": "Transfer to RGE",
    "transferred_to_rge": "Manufacturing Start",
    "manufacturing_started": "Manufacturing Complete",
    "manufacturing_complete": "Return to LEGO",
    "returned_to_lego": "Complete Campaign",
    "completed": None,
}

# Event types
CAMPAIGN_CREATED = "CampaignCreated"
INBOUND_SHIPMENT_RECORDED = "InboundShipmentRecorded"
GRANULATION_COMPLETED = "GranulationCompleted"
METAL_REMOVAL_COMPLETED = "MetalRemovalCompleted"
POLYMER_PURIFICATION_COMPLETED = "PolymerPurificationCompleted"
EXTRUSION_COMPLETED = "ExtrusionCompleted"
ECHA_APPROVAL_RECORDED = "ECHAApprovalRecorded"
TRANSFER_TO_RGE_RECORDED = "TransferToRGERecorded"
MANUFACTURING_STARTED = "ManufacturingStarted"
MANUFACTURING_COMPLETED = "ManufacturingCompleted"
RETURN_TO_LEGO_RECORDED = "ReturnToLEGORecorded"
CAMPAIGN_COMPLETED = "CampaignCompleted"
EVENT_CORRECTED = "EventCorrected"

EVENT_TARGET_STATUS = {
    CAMPAIGN_CREATED: "created",
    INBOUND_SHIPMENT_RECORDED: "inbound_shipment_recorded",
    GRANULATION_COMPLETED: "granulation_complete",
    METAL_REMOVAL_COMPLETED: "metal_removal_complete",
    POLYMER_PURIFICATION_COMPLETED: "polymer_purification_complete",
    EXTRUSION_COMPLETED: "extrusion_complete",
    ECHA_APPROVAL_RECORDED: "echa_approved",
    TRANSFER_TO_RGE_RECORDED: "transferred_to_rge",
    MANUFACTURING_STARTED: "manufacturing_started",
    MANUFACTURING_COMPLETED: "manufacturing_complete",
    RETURN_TO_LEGO_RECORDED: "returned_to_lego",
    CAMPAIGN_COMPLETED: "completed",
}

EVENT_TYPES = frozenset(EVENT_TARGET_STATUS) | {EVENT_CORRECTED}

PROCESSING_EVENT_TYPES = frozenset(
    {
        GRANULATION_COMPLETED,
        METAL_REMOVAL_COMPLETED,
        POLYMER_PURIFICATION_COMPLETED,
        EXTRUSION_COMPLETED,
    }
)

# Payload field that sets current_weight_kg, per event type
WEIGHT_FIELDS = {
    INBOUND_SHIPMENT_RECORDED: "netWeightKg",
    GRANULATION_COMPLETED: "outputWeightKg",
    METAL_REMOVAL_COMPLETED: "outputWeightKg",
    POLYMER_PURIFICATION_COMPLETED: "outputWeightKg",
    EXTRUSION_COMPLETED: "outputWeightKg",
    TRANSFER_TO_RGE_RECORDED: "receivedWeightKg",
}

# Blocked until the campaign has ECHA approval
RGE_GATED_EVENT_TYPES = frozenset(
    {
        TRANSFER_TO_RGE_RECORDED,
        MANUFACTURING_STARTED,
        MANUFACTURING_COMPLETED,
        RETURN_TO_LEGO_RECORDED,
    }
)

ECHA_GATE_MESSAGE = "ECHA approval required before RGE operations. Please record ECHA approval event first."

# Display labels for fields compared during import reconciliation
FIELD_LABELS = {
    "grossWeightKg": "Gross Weight (kg)",
    "netWeightKg": "Net Weight (kg)",
    "carrier": "Carrier",
    "trackingRef": "Tracking Reference",
    "startingWeightKg": "Starting Weight (kg)",
    "outputWeightKg": "Output Weight (kg)",
    "processHours": "Process Hours",
    "batchNumber": "Batch Number",
    "receivedWeightKg": "Received Weight (kg)",
    "poNumber": "PO Number",
    "poQuantity": "PO Quantity",
    "startDate": "Start Date",
    "endDate": "End Date",
    "actualQuantity": "Actual Quantity",
}

# kg CO2e saved per manufactured unit
CO2E_SAVED_PER_UNIT_KG = 4.0

# Analytics key per processing step, in process order
YIELD_KEYS = {
    GRANULATION_COMPLETED: "granulation",
    METAL_REMOVAL_COMPLETED: "metalRemoval",
    POLYMER_PURIFICATION_COMPLETED: "purification",
    EXTRUSION_COMPLETED: "extrusion",
}
