"""Module session: the capture session context."""
#
# PURPOSE:
# One CaptureSession owns one store, one correlator (with its own pending
# table) and, when started, one capture proxy. Nothing is module-global, so
# several sessions can coexist and tests get a fresh one each time.
#
# LIFECYCLE:
# Create -> start_proxy() -> browse the app -> (optional) set_recording(True)
# and perform the action once -> run_bulk() -> stop_proxy()
#

import asyncio
import time
import uuid
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import httpx

from bulkops.base.config import BulkOpsConfig, get_config
from bulkops.capture.correlator import CorrelationUpdate, Correlator
from bulkops.capture.models import TrafficEvent, redact_headers
from bulkops.contracts import BulkRequest
from bulkops.data.store import KEY_RECORDING, StateStore
from bulkops.errors import MissingTemplateError, NoTargetsError
from bulkops.executor.actions import ActionSpec, TemplateSpec, get_feature
from bulkops.executor.bulk import BatchCallback, BulkExecutor
from bulkops.executor.models import BatchProgress, BatchRun
from bulkops.ghost.proxy import CaptureProxy, FlowRegistry, TrafficAddon


class CaptureSession:
    """
    An isolated workspace: captured state plus the machinery that fills it.

    Args:
        config: settings (defaults to the global config)
        store: state store; by default persisted under the storage dir
    """

    def __init__(self, config: Optional[BulkOpsConfig] = None, store: Optional[StateStore] = None):
        self.id = str(uuid.uuid4())
        self.config = config or get_config()
        self.start_time = time.time()

        self.store = store if store is not None else StateStore(self.config.storage.state_path)
        self.registry = FlowRegistry()
        self.correlator = Correlator(self.store, body_source=self.registry, config=self.config.capture)
        self.addon = TrafficAddon(
            self.correlator,
            self.registry,
            capture_hosts=self.config.capture.capture_hosts,
            listener=self._on_update,
        )
        self.proxy: Optional[CaptureProxy] = None

        self.logs: List[str] = []
        self._logs_lock = Lock()
        self._external_log_sink: Optional[Callable[[str], None]] = None

    # ------------------------------------------------------------------
    # Proxy lifecycle
    # ------------------------------------------------------------------

    async def start_proxy(self) -> CaptureProxy:
        if self.proxy is None or not self.proxy.running:
            self.proxy = CaptureProxy(self.addon, self.config.proxy)
            await self.proxy.start()
            self.log(f"Capture proxy listening on {self.proxy.host}:{self.proxy.port}")
        return self.proxy

    def stop_proxy(self):
        if self.proxy:
            self.proxy.stop()
            self.proxy = None
            self.log("Capture proxy stopped")

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def set_recording(self, active: bool) -> None:
        self.store.set(KEY_RECORDING, bool(active))
        self.log("Recording armed: perform the action once in the app" if active else "Recording disarmed")

    # ------------------------------------------------------------------
    # Bulk runs
    # ------------------------------------------------------------------

    def build_spec(self, request: BulkRequest) -> ActionSpec:
        if request.feature:
            spec = get_feature(request.feature).customize(
                payload_input=request.payload_input,
                method=request.method,
                query_param=request.query_param,
            )
        else:
            template = self.store.action_template
            if template is None:
                raise MissingTemplateError()
            spec = TemplateSpec(
                template=template,
                rule=request.injection,
                field=request.injection_field,
                placeholder=request.placeholder,
            )
        spec.validate()
        return spec

    async def run_bulk(
        self,
        request: BulkRequest,
        client: Optional[httpx.AsyncClient] = None,
        on_batch: Optional[BatchCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> BatchRun:
        """
        Run one bulk operation against a snapshot of the captured state.

        Args:
            request: what to run and (optionally) which ids
            client: httpx client to use; a short-lived one is created if omitted
            on_batch: progress callback, called once per finished batch
            cancel: cooperative cancellation flag
        """
        spec = self.build_spec(request)
        targets = request.target_ids if request.target_ids is not None else list(self.store.targets)
        if not targets:
            raise NoTargetsError()
        credentials = self.store.credentials

        def _progress(progress: BatchProgress):
            self.log(f"Batch {progress.index + 1}/{progress.total} done")
            if on_batch is not None:
                return on_batch(progress)
            return None

        self.log(f"Starting bulk operation on {len(targets)} targets")
        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=self.config.executor.request_timeout)
        try:
            executor = BulkExecutor(client, self.config.executor)
            run = await executor.run(
                targets,
                credentials,
                spec,
                batch_size=request.batch_size,
                inter_batch_delay_ms=request.inter_batch_delay_ms,
                on_batch=_progress,
                cancel=cancel,
            )
        finally:
            if owns_client:
                await client.aclose()

        self.log(f"Completed! {run.describe()}")
        if run.failed:
            self.log(f"Failed locations: {', '.join(run.failed)}")
        return run

    # ------------------------------------------------------------------
    # Logging / introspection
    # ------------------------------------------------------------------

    def _on_update(self, event: TrafficEvent, update: CorrelationUpdate) -> None:
        if update.credentials_updated:
            self.log("Captured credentials")
        if update.targets_updated:
            self.log(f"Captured {len(self.store.targets)} locations")
        if update.template_updated:
            template = self.store.action_template
            self.log(f"Recorded action: {template.method} {template.url}")

    def log(self, message: str):
        """Thread-safe session log with optional streaming sink."""
        timestamp = time.strftime("%H:%M:%S", time.localtime())
        entry = f"[{timestamp}] {message}"
        with self._logs_lock:
            self.logs.append(entry)
        if self._external_log_sink:
            self._external_log_sink(entry)

    def set_external_log_sink(self, log_fn: Callable[[str], None]):
        self._external_log_sink = log_fn

    def to_dict(self) -> Dict[str, Any]:
        credentials = self.store.credentials
        template = self.store.action_template
        if template is not None:
            template = template.to_dict()
            template["headers"] = redact_headers(template["headers"])
        return {
            "id": self.id,
            "proxy_active": self.proxy is not None and self.proxy.running,
            "proxy_port": self.proxy.port if self.proxy else None,
            "recording": self.store.recording,
            "targets": list(self.store.targets),
            "target_count": len(self.store.targets),
            "has_credentials": credentials.authorization is not None,
            "credentials_captured_at": credentials.captured_at or None,
            "action_template": template,
            "pending_exchanges": len(self.correlator.context),
        }
