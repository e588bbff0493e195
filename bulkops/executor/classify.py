"""
bulkops/executor/classify.py

Terminal outcome classification.

When a target exhausts its attempts, the final error decides the bucket.
Some remote messages do not mean the call failed: they mean the mutation does
not apply to that location (it lacks the resource being configured). Those
go to Skipped. Everything else goes to Failed.

SKIP_SIGNATURES is the single place these messages are listed. Rows are
checked in order against the error message, case-insensitively.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Pattern, Sequence, Tuple

from bulkops.errors import BulkOpsError
from bulkops.executor.models import Outcome


@dataclass(frozen=True)
class ErrorSignature:
    pattern: Pattern[str]
    reason: str

    def matches(self, message: str) -> bool:
        return bool(self.pattern.search(message))


def _sig(regex: str, reason: str) -> ErrorSignature:
    return ErrorSignature(re.compile(regex, re.IGNORECASE), reason)


SKIP_SIGNATURES: Tuple[ErrorSignature, ...] = (
    # Location has no phone system sub-account to configure
    _sig(r"twilio account (?:not found|does not exist)", "no phone account"),
    _sig(r"no (?:twilio|phone|lc ?phone) account", "no phone account"),
    _sig(r"account (?:not found|does not exist) for (?:this )?location", "no account for location"),
    # Feature is not enabled for the location's plan
    _sig(r"not (?:enabled|available) for (?:this )?location", "feature not enabled"),
)


def build_signatures(extra_markers: Iterable[str] = ()) -> Tuple[ErrorSignature, ...]:
    """Default table plus plain-substring markers from configuration."""
    extras = tuple(
        ErrorSignature(re.compile(re.escape(marker), re.IGNORECASE), f"marker: {marker}")
        for marker in extra_markers
        if marker
    )
    return SKIP_SIGNATURES + extras


def match_signature(
    message: str, signatures: Sequence[ErrorSignature] = SKIP_SIGNATURES
) -> Optional[ErrorSignature]:
    for signature in signatures:
        if signature.matches(message):
            return signature
    return None


def error_message(error: BaseException) -> str:
    if isinstance(error, BulkOpsError):
        return error.message
    return str(error) or type(error).__name__


def classify_failure(
    error: BaseException, signatures: Sequence[ErrorSignature] = SKIP_SIGNATURES
) -> Tuple[Outcome, str]:
    """Map the final error of an exhausted target to (outcome, message)."""
    message = error_message(error)
    if match_signature(message, signatures) is not None:
        return Outcome.SKIPPED, message
    return Outcome.FAILED, message
