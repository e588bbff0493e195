"""
bulkops/capture/models.py

Purpose:
    Data structures for the capture side of the system.

Semantics:
    - TrafficEvent: one lifecycle phase of one observed exchange. Transient.
    - PendingExchange: correlator-owned record of an exchange that has been
      initiated but not yet completed.
    - CapturedCredentials / ActionTemplate / TargetSet: the values the
      correlator publishes to the store. All three are immutable and are
      always replaced as a whole.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


class Phase(str, Enum):
    INITIATED = "initiated"
    STATUS_RECEIVED = "statusReceived"
    COMPLETED = "completed"


@dataclass(frozen=True)
class TrafficEvent:
    correlation_id: str
    phase: Phase
    url: str = ""
    method: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    status: Optional[int] = None  # Only set for STATUS_RECEIVED


@dataclass
class PendingExchange:
    url: str
    method: str
    headers: Dict[str, str]
    body: Optional[str] = None
    created_at: float = field(default_factory=time.time)


def header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


@dataclass(frozen=True)
class CapturedCredentials:
    """
    Header set replayed on every bulk call.

    The mapping is read-only; a new extraction builds a new instance.
    """
    headers: Mapping[str, str] = field(default_factory=dict)
    captured_at: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    @property
    def authorization(self) -> Optional[str]:
        return header_lookup(self.headers, "authorization")

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.captured_at

    def merged(self, extra: Mapping[str, str]) -> "CapturedCredentials":
        headers = dict(self.headers)
        headers.update(extra)
        # captured_at tracks the token, not later header merges
        return CapturedCredentials(headers=headers, captured_at=self.captured_at)

    def snapshot(self) -> Dict[str, str]:
        return dict(self.headers)

    def to_dict(self) -> Dict[str, Any]:
        return {"headers": dict(self.headers), "captured_at": self.captured_at}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CapturedCredentials":
        return cls(
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            captured_at=float(data.get("captured_at") or 0.0),
        )


@dataclass(frozen=True)
class ActionTemplate:
    """A recorded mutation request, frozen once captured."""
    url: str
    method: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None  # Parsed JSON when the body was JSON, raw text otherwise
    recorded_at: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        object.__setattr__(self, "body", copy.deepcopy(self.body))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "method": self.method,
            "headers": dict(self.headers),
            "body": self.body,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActionTemplate":
        return cls(
            url=str(data["url"]),
            method=str(data["method"]),
            headers=dict(data.get("headers") or {}),
            body=data.get("body"),
            recorded_at=float(data.get("recorded_at") or 0.0),
        )


@dataclass(frozen=True)
class TargetSet:
    """Ordered, de-duplicated identifiers to operate on."""
    ids: Tuple[str, ...] = ()

    @classmethod
    def from_iterable(cls, ids: Iterable[str]) -> "TargetSet":
        # dict preserves first-occurrence order
        return cls(ids=tuple(dict.fromkeys(str(i) for i in ids)))

    def __len__(self) -> int:
        return len(self.ids)

    def __iter__(self):
        return iter(self.ids)

    def __bool__(self) -> bool:
        return bool(self.ids)


SENSITIVE_HEADERS = frozenset({"authorization", "token-id", "cookie"})


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: ("***" if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()}
