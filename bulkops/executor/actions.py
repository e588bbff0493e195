"""
bulkops/executor/actions.py

Action specifications: how one mutation call is built for one target.

Two kinds of spec exist:
- FeatureSpec: a static, named descriptor (url template, method, payload
  builder, optional query parameter). Built-in ones live in FEATURES.
- TemplateSpec: a recorded ActionTemplate replayed with the target id
  injected by exactly one InjectionRule.

Both produce a PreparedCall per target; the executor adds credentials and
sends it.
"""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from bulkops.capture.models import ActionTemplate
from bulkops.errors import InvalidActionSpecError, UnknownFeatureError

ID_PLACEHOLDER = "{id}"

# Headers from a recorded request that must not be replayed verbatim
_UNSAFE_TEMPLATE_HEADERS = frozenset({
    "host", "content-length", "connection", "accept-encoding",
    "cookie", "transfer-encoding", "proxy-connection",
})


class InjectionRule(str, enum.Enum):
    """Where the target id goes in the outgoing request."""
    PATH = "path"      # /api/{id}/resource
    QUERY = "query"    # ?locationId={id}
    BODY = "body"      # {"locationId": "{id}", ...}


@dataclass
class PreparedCall:
    """A fully constructed request for one target, minus credentials."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    json: Any = None
    content: Optional[str] = None

    def to_httpx_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
        }
        if self.json is not None:
            kwargs["json"] = self.json
        elif self.content is not None:
            kwargs["content"] = self.content
        return kwargs


def with_query_param(url: str, name: str, value: str) -> str:
    """Set (or replace) one query parameter, keeping the others in order."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != name]
    query.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


def substitute_path(url: str, target_id: str, placeholder: Optional[str] = None) -> str:
    """Put the id into the url path, via {id} or by replacing a recorded segment."""
    encoded = quote(target_id, safe="")
    if ID_PLACEHOLDER in url:
        return url.replace(ID_PLACEHOLDER, encoded)
    if not placeholder:
        raise InvalidActionSpecError(
            "Path injection needs an {id} placeholder in the url or a recorded id to replace",
            details={"url": url},
        )
    parts = urlsplit(url)
    segments = parts.path.split("/")
    if placeholder not in segments:
        raise InvalidActionSpecError(
            f"Recorded id {placeholder!r} is not a path segment of {url}",
            details={"url": url, "placeholder": placeholder},
        )
    path = "/".join(encoded if seg == placeholder else seg for seg in segments)
    return urlunsplit(parts._replace(path=path))


def inject_body_field(body: Any, dotted: str, target_id: str) -> Any:
    """Deep-copy a JSON object body and set a (dotted) field to the id."""
    if not isinstance(body, dict):
        raise InvalidActionSpecError(
            "Body injection needs a JSON object body",
            details={"body_type": type(body).__name__},
        )
    cloned = copy.deepcopy(body)
    node = cloned
    keys = dotted.split(".")
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = target_id
    return cloned


# ---------------------------------------------------------------------------
# Static features
# ---------------------------------------------------------------------------

PayloadBuilder = Callable[[Mapping[str, Any]], Any]


def _no_payload(_: Mapping[str, Any]) -> Any:
    return None


@dataclass(frozen=True)
class FeatureSpec:
    name: str
    url_template: str
    method: str = "PUT"
    payload_builder: PayloadBuilder = _no_payload
    query_param: Optional[str] = None
    payload_input: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""

    @property
    def rule(self) -> InjectionRule:
        return InjectionRule.QUERY if self.query_param else InjectionRule.PATH

    def validate(self) -> None:
        if self.rule == InjectionRule.PATH and ID_PLACEHOLDER not in self.url_template:
            raise InvalidActionSpecError(
                f"Feature {self.name!r} has neither a query parameter nor an {{id}} placeholder",
                details={"url_template": self.url_template},
            )
        # Surface bad payload input once, before any call is made
        self.payload_builder(self.payload_input)

    def customize(
        self,
        payload_input: Optional[Mapping[str, Any]] = None,
        method: Optional[str] = None,
        query_param: Optional[str] = None,
    ) -> "FeatureSpec":
        changes: Dict[str, Any] = {}
        if payload_input is not None:
            changes["payload_input"] = dict(payload_input)
        if method:
            changes["method"] = method.upper()
        if query_param:
            changes["query_param"] = query_param
        return replace(self, **changes) if changes else self

    def prepare(self, target_id: str) -> PreparedCall:
        if self.rule == InjectionRule.QUERY:
            url = with_query_param(self.url_template, self.query_param, target_id)
        else:
            url = substitute_path(self.url_template, target_id)
        payload = self.payload_builder(self.payload_input)
        return PreparedCall(method=self.method.upper(), url=url, json=payload)


def _call_recording_payload(params: Mapping[str, Any]) -> Dict[str, Any]:
    try:
        days = int(params.get("retention_days", 60))
    except (TypeError, ValueError):
        raise InvalidActionSpecError(
            "retention_days must be an integer",
            details={"retention_days": params.get("retention_days")},
        ) from None
    if days <= 0:
        raise InvalidActionSpecError("retention_days must be positive", details={"retention_days": days})
    return {
        "enableCallRecordingDeletion": bool(params.get("enable_deletion", True)),
        "callRecordingRetentionPeriod": days,
    }


FEATURES: Dict[str, FeatureSpec] = {
    "call-recording-retention": FeatureSpec(
        name="call-recording-retention",
        url_template="https://backend.leadconnectorhq.com/phone-system/twilio-accounts",
        method="PUT",
        payload_builder=_call_recording_payload,
        query_param="locationId",
        description="Enable automatic deletion of call recordings after N days (default 60).",
    ),
}


def get_feature(name: str) -> FeatureSpec:
    try:
        return FEATURES[name]
    except KeyError:
        raise UnknownFeatureError(name) from None


def list_features() -> List[Dict[str, Any]]:
    return [
        {
            "name": spec.name,
            "method": spec.method,
            "url": spec.url_template,
            "query_param": spec.query_param,
            "description": spec.description,
        }
        for spec in FEATURES.values()
    ]


# ---------------------------------------------------------------------------
# Recorded templates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TemplateSpec:
    """
    Replays a recorded ActionTemplate for each target.

    Args:
        template: the frozen recorded request
        rule: where the id is injected
        field: query parameter name (QUERY) or dotted body path (BODY)
        placeholder: the id that was in the recorded url (PATH without {id})
    """
    template: ActionTemplate
    rule: InjectionRule
    field: Optional[str] = None
    placeholder: Optional[str] = None

    def validate(self) -> None:
        if self.rule in (InjectionRule.QUERY, InjectionRule.BODY) and not self.field:
            raise InvalidActionSpecError(f"{self.rule.value} injection needs a field name")
        if self.rule == InjectionRule.BODY and not isinstance(self.template.body, dict):
            raise InvalidActionSpecError("Body injection needs a recorded JSON object body")
        if self.rule == InjectionRule.PATH:
            # Raises when neither {id} nor the placeholder segment is usable
            substitute_path(self.template.url, "probe", self.placeholder)

    def _headers(self) -> Dict[str, str]:
        return {
            k: v for k, v in self.template.headers.items()
            if k.lower() not in _UNSAFE_TEMPLATE_HEADERS
        }

    def prepare(self, target_id: str) -> PreparedCall:
        url = self.template.url
        body = self.template.body
        if self.rule == InjectionRule.PATH:
            url = substitute_path(url, target_id, self.placeholder)
            body = copy.deepcopy(body)
        elif self.rule == InjectionRule.QUERY:
            url = with_query_param(url, self.field, target_id)
            body = copy.deepcopy(body)
        else:
            body = inject_body_field(body, self.field, target_id)

        call = PreparedCall(method=self.template.method.upper(), url=url, headers=self._headers())
        if isinstance(body, (dict, list)):
            call.json = body
        elif body is not None:
            call.content = str(body)
        return call


ActionSpec = Union[FeatureSpec, TemplateSpec]
