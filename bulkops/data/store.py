"""
bulkops/data/store.py

Persistent key-value store for captured state.

Four keys are recognised: credentials, targets, actionTemplate and
recordingFlag. Values are held in memory as typed objects and written to a
single JSON document on every commit. Subscribers receive (key, value) on
every commit; a failing subscriber is logged and never affects the writer.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from bulkops.capture.models import ActionTemplate, CapturedCredentials, TargetSet
from bulkops.errors import BulkOpsError, ErrorCode

logger = logging.getLogger(__name__)

KEY_CREDENTIALS = "credentials"
KEY_TARGETS = "targets"
KEY_ACTION_TEMPLATE = "actionTemplate"
KEY_RECORDING = "recordingFlag"

KEYS = (KEY_CREDENTIALS, KEY_TARGETS, KEY_ACTION_TEMPLATE, KEY_RECORDING)

Subscriber = Callable[[str, Any], None]


def _default(key: str) -> Any:
    if key == KEY_CREDENTIALS:
        return CapturedCredentials(headers={}, captured_at=0.0)
    if key == KEY_TARGETS:
        return TargetSet()
    if key == KEY_RECORDING:
        return False
    return None


def _encode(key: str, value: Any) -> Any:
    if value is None:
        return None
    if key in (KEY_CREDENTIALS, KEY_ACTION_TEMPLATE):
        return value.to_dict()
    if key == KEY_TARGETS:
        return list(value.ids)
    return bool(value)


def _decode(key: str, raw: Any) -> Any:
    if raw is None:
        return _default(key)
    if key == KEY_CREDENTIALS:
        return CapturedCredentials.from_dict(raw)
    if key == KEY_TARGETS:
        return TargetSet.from_iterable(raw)
    if key == KEY_ACTION_TEMPLATE:
        return ActionTemplate.from_dict(raw)
    return bool(raw)


class StateStore:
    """
    Key-value state shared between the correlator (sole writer) and the
    executor/UI (readers).

    Args:
        path: JSON file to persist to. None keeps state in memory only.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._values: Dict[str, Any] = {}
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        if self.path is not None:
            self._load()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any:
        """Return the value for key, or its default when absent."""
        self._check_key(key)
        with self._lock:
            if key in self._values:
                return self._values[key]
        return _default(key)

    @property
    def credentials(self) -> CapturedCredentials:
        return self.get(KEY_CREDENTIALS)

    @property
    def targets(self) -> TargetSet:
        return self.get(KEY_TARGETS)

    @property
    def action_template(self) -> Optional[ActionTemplate]:
        return self.get(KEY_ACTION_TEMPLATE)

    @property
    def recording(self) -> bool:
        return self.get(KEY_RECORDING)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any) -> None:
        """Commit a value, persist the document and notify subscribers."""
        self._check_key(key)
        with self._lock:
            self._values[key] = value
            self._persist()
        logger.debug("[Store] Committed %s", key)
        self._notify(key, value)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()
            self._persist()
        for key in KEYS:
            self._notify(key, _default(key))

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a (key, value) listener. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def to_dict(self) -> Dict[str, Any]:
        return {key: _encode(key, self.get(key)) for key in KEYS}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _check_key(key: str) -> None:
        if key not in KEYS:
            raise KeyError(f"Unknown store key: {key}")

    def _notify(self, key: str, value: Any) -> None:
        for callback in list(self._subscribers):
            try:
                callback(key, value)
            except Exception as e:
                func_name = getattr(callback, "__name__", str(callback))
                logger.error(f"[Store] Subscriber error ({func_name}): {e}", exc_info=True)

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("[Store] Ignoring unreadable state file %s: %s", self.path, e)
            return
        if not isinstance(raw, dict):
            return
        for key in KEYS:
            if raw.get(key) is None:
                continue
            try:
                self._values[key] = _decode(key, raw[key])
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("[Store] Dropping malformed %s entry: %s", key, e)

    def _persist(self) -> None:
        if self.path is None:
            return
        payload = {key: _encode(key, value) for key, value in self._values.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so readers never see a torn document
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
            try:
                self.path.chmod(0o600)
            except OSError:
                pass
        except OSError as e:
            raise BulkOpsError(
                ErrorCode.STORE_WRITE_FAILED,
                f"Could not write state to {self.path}: {e}",
            ) from e
