"""
bulkops/capture/correlator.py

The Correlator.
Pairs the lifecycle phases of each observed exchange by correlation id and
turns the interesting ones into store updates:

- target-listing requests  -> CapturedCredentials (from request headers)
- target-listing responses -> TargetSet (from the "locations" payload)
- first mutation while recording -> ActionTemplate

Event delivery must be serialized (the proxy addon runs on one event loop),
so the pending table needs no locking.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from bulkops.base.config import CaptureConfig, get_config
from bulkops.capture.models import (
    ActionTemplate,
    CapturedCredentials,
    PendingExchange,
    Phase,
    TargetSet,
    TrafficEvent,
    header_lookup,
)
from bulkops.data.store import (
    KEY_ACTION_TEMPLATE,
    KEY_CREDENTIALS,
    KEY_RECORDING,
    KEY_TARGETS,
    StateStore,
)
from bulkops.errors import ParseError

logger = logging.getLogger(__name__)

CREDENTIAL_HEADERS = ("authorization", "token-id", "version")


class BodySource(Protocol):
    """Side channel that yields the raw response payload of a finished exchange."""

    def get_response_body(self, correlation_id: str) -> Optional[str]:
        ...


@dataclass
class CorrelationContext:
    """Session-scoped state owned by exactly one Correlator."""
    pending: Dict[str, PendingExchange] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.pending)


@dataclass(frozen=True)
class CorrelationUpdate:
    credentials_updated: bool = False
    targets_updated: bool = False
    template_updated: bool = False

    @property
    def changed(self) -> bool:
        return self.credentials_updated or self.targets_updated or self.template_updated


NO_UPDATE = CorrelationUpdate()


def is_success_status(status: Optional[int]) -> bool:
    return status is not None and 200 <= status <= 299


def extract_credentials(headers: Mapping[str, str], fixed: Mapping[str, str]) -> Dict[str, str]:
    """Fixed constants merged with whichever credential headers were observed."""
    found: Dict[str, str] = dict(fixed)
    for name in CREDENTIAL_HEADERS:
        value = header_lookup(headers, name)
        if value is not None:
            found[name] = value
    return found


def extract_target_ids(payload: Any, id_fields: Sequence[str]) -> Optional[List[str]]:
    """
    Pull identifiers out of a target-listing payload.

    Returns None when the payload has no "locations" list. Raises ParseError
    when the payload is not an object at all.
    """
    if not isinstance(payload, dict):
        raise ParseError(
            "Target listing payload is not an object",
            details={"type": type(payload).__name__},
        )
    locations = payload.get("locations")
    if not isinstance(locations, list):
        return None

    ids: List[str] = []
    for index, entry in enumerate(locations):
        if not isinstance(entry, dict):
            logger.warning("[Correlator] locations[%d] is not an object, skipping", index)
            continue
        for name in id_fields:
            value = entry.get(name)
            if value not in (None, ""):
                ids.append(str(value))
                break
        else:
            logger.warning(
                "[Correlator] locations[%d] has none of the id fields %s, skipping",
                index, list(id_fields),
            )
    return ids


def parse_body(raw: Optional[str]) -> Any:
    """JSON body when it parses, raw text otherwise."""
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class Correlator:
    """
    Matches initiation and completion events and publishes what it extracts.

    Args:
        store: where credentials, targets and templates are published
        body_source: capability for fetching a response payload by id
        config: capture settings (defaults to the global config)
        context: pending-exchange table; a fresh one per correlator by default
    """

    def __init__(
        self,
        store: StateStore,
        body_source: Optional[BodySource] = None,
        config: Optional[CaptureConfig] = None,
        context: Optional[CorrelationContext] = None,
    ):
        self.store = store
        self.body_source = body_source
        self.config = config or get_config().capture
        self.context = context or CorrelationContext()

    @property
    def pending(self) -> Dict[str, PendingExchange]:
        return self.context.pending

    def matches_target(self, url: str) -> bool:
        return self.config.target_pattern in url

    def process(self, event: TrafficEvent) -> CorrelationUpdate:
        if event.phase == Phase.INITIATED:
            return self._on_initiated(event)
        if event.phase == Phase.STATUS_RECEIVED:
            self._on_status(event)
            return NO_UPDATE
        if event.phase == Phase.COMPLETED:
            return self._on_completed(event)
        logger.debug("[Correlator] Unknown phase %r for %s", event.phase, event.correlation_id)
        return NO_UPDATE

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _on_initiated(self, event: TrafficEvent) -> CorrelationUpdate:
        method = (event.method or "").upper()
        if method == "OPTIONS":
            return NO_UPDATE

        if event.correlation_id in self.pending:
            logger.debug("[Correlator] Replacing pending exchange %s", event.correlation_id)
        self.pending[event.correlation_id] = PendingExchange(
            url=event.url,
            method=method,
            headers=dict(event.headers),
            body=event.body,
        )

        credentials_updated = False
        if self.matches_target(event.url):
            headers = extract_credentials(event.headers, dict(self.config.fixed_headers))
            self.store.set(KEY_CREDENTIALS, CapturedCredentials(headers=headers))
            credentials_updated = True
            logger.info("[Correlator] Captured credentials from %s", event.url)

        template_updated = False
        if method != "GET" and self.store.recording:
            template_updated = self._record_template(event, method)
            credentials_updated = credentials_updated or template_updated

        return CorrelationUpdate(
            credentials_updated=credentials_updated,
            template_updated=template_updated,
        )

    def _record_template(self, event: TrafficEvent, method: str) -> bool:
        version = header_lookup(event.headers, "version")
        if version is not None:
            current = self.store.credentials
            # Published credentials always carry the fixed constants
            extra = {k: v for k, v in self.config.fixed_headers if header_lookup(current.headers, k) is None}
            extra["version"] = version
            self.store.set(KEY_CREDENTIALS, current.merged(extra))

        template = ActionTemplate(
            url=event.url,
            method=method,
            headers=dict(event.headers),
            body=parse_body(event.body),
        )
        self.store.set(KEY_ACTION_TEMPLATE, template)
        self.store.set(KEY_RECORDING, False)
        logger.info("[Correlator] Recorded action template: %s %s", method, event.url)
        return True

    def _on_status(self, event: TrafficEvent) -> None:
        if event.correlation_id not in self.pending:
            return
        if not is_success_status(event.status):
            logger.debug(
                "[Correlator] Dropping %s after status %s",
                event.correlation_id, event.status,
            )
            del self.pending[event.correlation_id]

    def _on_completed(self, event: TrafficEvent) -> CorrelationUpdate:
        exchange = self.pending.get(event.correlation_id)
        if exchange is None:
            logger.debug("[Correlator] No pending exchange for %s", event.correlation_id)
            return NO_UPDATE

        try:
            if not self.matches_target(exchange.url):
                return NO_UPDATE
            return self._extract_targets(event.correlation_id)
        finally:
            self.pending.pop(event.correlation_id, None)

    def _extract_targets(self, correlation_id: str) -> CorrelationUpdate:
        if self.body_source is None:
            logger.warning("[Correlator] No body source configured, cannot read %s", correlation_id)
            return NO_UPDATE
        try:
            raw = self.body_source.get_response_body(correlation_id)
            if not raw:
                logger.debug("[Correlator] Empty response body for %s", correlation_id)
                return NO_UPDATE
            try:
                payload = json.loads(raw)
            except ValueError as e:
                raise ParseError(f"Response body is not JSON: {e}") from e
            ids = extract_target_ids(payload, self.config.id_fields)
        except ParseError as e:
            logger.warning("[Correlator] Could not parse target listing: %s", e.message)
            return NO_UPDATE
        except Exception as e:
            logger.warning("[Correlator] Could not get response body for %s: %s", correlation_id, e)
            return NO_UPDATE

        if ids is None:
            logger.debug("[Correlator] Listing response for %s has no locations list", correlation_id)
            return NO_UPDATE

        targets = TargetSet.from_iterable(ids)
        self.store.set(KEY_TARGETS, targets)
        logger.info("[Correlator] Captured %d target ids", len(targets))
        return CorrelationUpdate(targets_updated=True)
