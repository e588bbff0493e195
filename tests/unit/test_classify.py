import pytest

from bulkops.errors import HttpStatusError, TransportError
from bulkops.executor.classify import build_signatures, classify_failure, match_signature
from bulkops.executor.models import Outcome


@pytest.mark.parametrize("message", [
    "Twilio account not found",
    "twilio account does not exist",
    "No LC Phone account for this location",
    "Account not found for this location",
    "Call recording is not enabled for this location",
])
def test_missing_prerequisite_is_skipped(message):
    outcome, reported = classify_failure(HttpStatusError(404, message))
    assert outcome == Outcome.SKIPPED
    assert reported == message


@pytest.mark.parametrize("error", [
    HttpStatusError(401, "Invalid JWT"),
    HttpStatusError(500, "Operation failed (HTTP 500)"),
    TransportError("ConnectTimeout"),
])
def test_everything_else_fails(error):
    outcome, _ = classify_failure(error)
    assert outcome == Outcome.FAILED


def test_extra_markers_are_literal_substrings():
    signatures = build_signatures(["sub-account (legacy)", ""])
    assert match_signature("Sub-account (LEGACY) missing", signatures).reason == "marker: sub-account (legacy)"
    assert match_signature("sub-account legacy missing", signatures) is None


def test_plain_exceptions_use_type_name_when_empty():
    outcome, message = classify_failure(RuntimeError())
    assert outcome == Outcome.FAILED
    assert message == "RuntimeError"
