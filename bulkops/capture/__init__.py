"""Pairs traffic events into exchanges and extracts credentials, targets and templates."""

from .models import (
    ActionTemplate,
    CapturedCredentials,
    PendingExchange,
    Phase,
    TargetSet,
    TrafficEvent,
)

__all__ = [
    "ActionTemplate",
    "CapturedCredentials",
    "PendingExchange",
    "Phase",
    "TargetSet",
    "TrafficEvent",
]
