"""
bulkops/ghost/proxy.py
The Traffic Observer.
Runs a local mitmproxy instance; the browser is pointed at it and every flow
to the watched hosts is translated into TrafficEvents for the Correlator.
"""

import asyncio
import logging
import socket
from typing import Callable, Dict, Optional, Sequence

from mitmproxy import http, options
from mitmproxy.tools.dump import DumpMaster

from bulkops.base.config import ProxyConfig
from bulkops.capture.correlator import CorrelationUpdate, Correlator
from bulkops.capture.models import Phase, TrafficEvent
from bulkops.utils.async_helpers import create_safe_task

logger = logging.getLogger(__name__)

UpdateListener = Callable[[TrafficEvent, CorrelationUpdate], None]


class FlowRegistry:
    """
    Keeps live flows by id so the correlator can read a response payload
    when the exchange completes.
    """

    def __init__(self):
        self._flows: Dict[str, http.HTTPFlow] = {}

    def track(self, flow: http.HTTPFlow) -> None:
        self._flows[flow.id] = flow

    def release(self, flow_id: str) -> None:
        self._flows.pop(flow_id, None)

    def get_response_body(self, correlation_id: str) -> Optional[str]:
        flow = self._flows.get(correlation_id)
        if flow is None or flow.response is None:
            return None
        return flow.response.get_text(strict=False)

    def __len__(self) -> int:
        return len(self._flows)


def host_matches(host: str, watched: Sequence[str]) -> bool:
    if not watched:
        return True
    host = (host or "").lower()
    return any(host == w or host.endswith("." + w) for w in watched)


class TrafficAddon:
    """
    mitmproxy addon that feeds the Correlator.

    request         -> initiated
    responseheaders -> statusReceived
    response/error  -> completed
    """

    def __init__(
        self,
        correlator: Correlator,
        registry: FlowRegistry,
        capture_hosts: Sequence[str] = (),
        listener: Optional[UpdateListener] = None,
    ):
        self.correlator = correlator
        self.registry = registry
        self.capture_hosts = tuple(h.lower() for h in capture_hosts)
        self.listener = listener

    def _watched(self, flow: http.HTTPFlow) -> bool:
        return host_matches(flow.request.host, self.capture_hosts)

    def _dispatch(self, event: TrafficEvent) -> None:
        update = self.correlator.process(event)
        if update.changed and self.listener is not None:
            self.listener(event, update)

    def request(self, flow: http.HTTPFlow):
        try:
            if not self._watched(flow):
                return
            self.registry.track(flow)
            self._dispatch(TrafficEvent(
                correlation_id=flow.id,
                phase=Phase.INITIATED,
                url=flow.request.pretty_url,
                method=flow.request.method,
                headers=dict(flow.request.headers.items()),
                body=flow.request.get_text(strict=False) or None,
            ))
        except Exception as e:
            logger.error(f"[Ghost] Request processing error: {e}", exc_info=True)

    def responseheaders(self, flow: http.HTTPFlow):
        try:
            if not self._watched(flow) or flow.response is None:
                return
            self._dispatch(TrafficEvent(
                correlation_id=flow.id,
                phase=Phase.STATUS_RECEIVED,
                url=flow.request.pretty_url,
                method=flow.request.method,
                status=flow.response.status_code,
            ))
        except Exception as e:
            logger.error(f"[Ghost] Response header processing error: {e}", exc_info=True)

    def response(self, flow: http.HTTPFlow):
        self._complete(flow)

    def error(self, flow: http.HTTPFlow):
        self._complete(flow)

    def _complete(self, flow: http.HTTPFlow):
        try:
            if not self._watched(flow):
                return
            self._dispatch(TrafficEvent(
                correlation_id=flow.id,
                phase=Phase.COMPLETED,
                url=flow.request.pretty_url,
                method=flow.request.method,
            ))
        except Exception as e:
            logger.error(f"[Ghost] Completion processing error: {e}", exc_info=True)
        finally:
            self.registry.release(flow.id)


class CaptureProxy:
    """
    Manages the background mitmproxy instance.
    """

    def __init__(self, addon: TrafficAddon, config: Optional[ProxyConfig] = None):
        cfg = config or ProxyConfig()
        self.addon = addon
        self.host = cfg.listen_host
        self.port = cfg.listen_port if cfg.listen_port > 0 else self._find_free_port()
        self.master: Optional[DumpMaster] = None
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def _find_free_port() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            s.listen(1)
            return s.getsockname()[1]

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the proxy as an asyncio task on the running loop."""
        opts = options.Options(listen_host=self.host, listen_port=self.port)
        self.master = DumpMaster(opts, with_termlog=False, with_dumper=False)
        self.master.addons.add(self.addon)
        logger.info(f"[*] Capture proxy listening on {self.host}:{self.port}")
        # create_safe_task logs a proxy crash instead of losing it
        self._task = create_safe_task(self.master.run(), name="capture-proxy")

    async def wait(self):
        if self._task is not None:
            await self._task

    def stop(self):
        """Shutdown the proxy gracefully."""
        if self.master:
            self.master.shutdown()
        if self._task and not self._task.done():
            self._task.cancel()
        logger.info("[*] Capture proxy stopped.")
