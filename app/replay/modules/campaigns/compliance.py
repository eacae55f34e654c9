"""
ECHA compliance gate.

RGE-stage events (transfer, manufacturing, return) may only be recorded once
the campaign projection carries ECHA approval. The check is a pure function of
the event type and the projection; `enforce_gate` is what the write path calls.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from app.replay.constants import ECHA_GATE_MESSAGE, RGE_GATED_EVENT_TYPES
from app.replay.errors import ComplianceDeniedError


class _HasApproval(Protocol):
    id: str
    echa_approved: bool


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str | None = None


ALLOW = GateDecision(True)


def is_gated(event_type: str) -> bool:
    return event_type in RGE_GATED_EVENT_TYPES


def check_gate(event_type: str, campaign: _HasApproval) -> GateDecision:
    if not is_gated(event_type):
        return ALLOW
    if campaign.echa_approved:
        return ALLOW
    return GateDecision(False, ECHA_GATE_MESSAGE)


def enforce_gate(event_type: str, campaign: _HasApproval) -> None:
    decision = check_gate(event_type, campaign)
    if not decision.allowed:
        raise ComplianceDeniedError(decision.reason or ECHA_GATE_MESSAGE, event_type=event_type, campaign_id=campaign.id)
