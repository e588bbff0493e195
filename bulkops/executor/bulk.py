"""
bulkops/executor/bulk.py

Purpose:
    Applies one mutation to every target in batches.

Behaviour:
    - Targets are split into contiguous batches of batch_size, run in input
      order. Calls inside a batch run concurrently and the whole batch settles
      before the next one starts.
    - Each target gets up to max_attempts calls. A 2xx ends it as Success.
      A transport failure or non-2xx waits backoff_base_ms * attempt and
      retries. The last error is classified as Failed or Skipped.
    - A fixed delay separates batches (not after the last one) to stay under
      the remote rate limit.
    - Targets and credentials are snapshotted when the run starts.
    - An optional asyncio.Event cancels cooperatively: it is checked before
      each batch and before each retry sleep. In-flight calls always finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import httpx

from bulkops.base.config import ExecutorConfig, get_config
from bulkops.capture.models import CapturedCredentials, TargetSet, header_lookup
from bulkops.errors import (
    HttpStatusError,
    MissingCredentialsError,
    StaleCredentialsError,
    TransportError,
)
from bulkops.executor.actions import ActionSpec
from bulkops.executor.classify import build_signatures, classify_failure
from bulkops.executor.models import BatchProgress, BatchRun, OperationResult, Outcome

log = logging.getLogger("executor.bulk")

BASE_HEADERS = {
    "accept": "application/json",
    "content-type": "application/json",
}

CANCELLED_MESSAGE = "cancelled"
STALE_WARNING_S = 3600.0

Sleep = Callable[[float], Awaitable[None]]
BatchCallback = Callable[[BatchProgress], Union[None, Awaitable[None]]]


def partition(ids: Sequence[str], size: int) -> List[Tuple[str, ...]]:
    """Contiguous batches of at most size ids, in order."""
    if size < 1:
        raise ValueError(f"batch size must be at least 1, got {size}")
    return [tuple(ids[i:i + size]) for i in range(0, len(ids), size)]


def _response_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("message"):
        message = data["message"]
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        return str(message)
    return f"Operation failed (HTTP {response.status_code})"


class BulkExecutor:
    """
    Batched, retrying runner for one action spec over many targets.

    Args:
        client: httpx.AsyncClient used for every call (owned by the caller)
        config: executor settings (defaults to the global config)
        sleep: awaitable sleep, swappable in tests
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: Optional[ExecutorConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = client
        self.config = config or get_config().executor
        self.sleep = sleep
        self.signatures = build_signatures(self.config.skip_markers)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        targets: Union[TargetSet, Sequence[str]],
        credentials: Union[CapturedCredentials, Mapping[str, str]],
        spec: ActionSpec,
        batch_size: Optional[int] = None,
        inter_batch_delay_ms: Optional[int] = None,
        on_batch: Optional[BatchCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> BatchRun:
        """Execute the whole run and return every target's outcome."""
        run = BatchRun()
        async for progress in self.stream(
            targets, credentials, spec,
            batch_size=batch_size,
            inter_batch_delay_ms=inter_batch_delay_ms,
            cancel=cancel,
        ):
            run.extend(progress.results)
            if on_batch is not None:
                maybe = on_batch(progress)
                if asyncio.iscoroutine(maybe):
                    await maybe
        log.info(f"Bulk operation completed. {run.describe()}")
        return run

    async def stream(
        self,
        targets: Union[TargetSet, Sequence[str]],
        credentials: Union[CapturedCredentials, Mapping[str, str]],
        spec: ActionSpec,
        batch_size: Optional[int] = None,
        inter_batch_delay_ms: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[BatchProgress]:
        """Yield one BatchProgress per batch, in order."""
        ids = tuple(dict.fromkeys(targets))
        headers = self._snapshot_credentials(credentials)
        spec.validate()

        size = batch_size if batch_size is not None else self.config.batch_size
        delay_ms = inter_batch_delay_ms if inter_batch_delay_ms is not None else self.config.inter_batch_delay_ms
        batches = partition(ids, size)
        log.info(f"Starting bulk operation: {len(ids)} targets in {len(batches)} batches")

        for index, batch in enumerate(batches):
            if cancel is not None and cancel.is_set():
                log.warning(f"Run cancelled before batch {index + 1}/{len(batches)}")
                for rest_index in range(index, len(batches)):
                    yield BatchProgress(
                        index=rest_index,
                        total=len(batches),
                        results=tuple(
                            OperationResult(target_id=t, outcome=Outcome.SKIPPED, message=CANCELLED_MESSAGE)
                            for t in batches[rest_index]
                        ),
                    )
                return

            log.debug(f"Processing batch {index + 1}/{len(batches)}: {list(batch)}")
            results = await asyncio.gather(
                *(self._run_target(target_id, headers, spec, cancel) for target_id in batch)
            )
            yield BatchProgress(index=index, total=len(batches), results=tuple(results))

            if index < len(batches) - 1:
                await self.sleep(delay_ms / 1000.0)

    # ------------------------------------------------------------------
    # Per-target state machine
    # ------------------------------------------------------------------

    async def _run_target(
        self,
        target_id: str,
        headers: Dict[str, str],
        spec: ActionSpec,
        cancel: Optional[asyncio.Event],
    ) -> OperationResult:
        last_error: Optional[Exception] = None
        attempts = 0
        for attempt in range(1, self.config.max_attempts + 1):
            attempts = attempt
            try:
                await self._attempt(target_id, headers, spec)
                log.debug(f"Operation successful for {target_id} (attempt {attempt})")
                return OperationResult(target_id=target_id, outcome=Outcome.SUCCESS, attempts=attempt)
            except (TransportError, HttpStatusError) as e:
                last_error = e
                log.info(f"Attempt {attempt} failed for {target_id}: {e.message}")

            if attempt >= self.config.max_attempts:
                break
            if cancel is not None and cancel.is_set():
                log.info(f"Not retrying {target_id}: run cancelled")
                break
            await self.sleep(self.config.backoff_base_ms * attempt / 1000.0)

        outcome, message = classify_failure(last_error, self.signatures)
        if outcome == Outcome.FAILED:
            log.warning(f"Operation failed for {target_id}: {message}")
        else:
            log.info(f"Skipping {target_id}: {message}")
        return OperationResult(target_id=target_id, outcome=outcome, message=message, attempts=attempts)

    async def _attempt(self, target_id: str, headers: Dict[str, str], spec: ActionSpec) -> None:
        call = spec.prepare(target_id)
        kwargs = call.to_httpx_kwargs()
        # Later layers win regardless of header name casing
        merged = httpx.Headers(BASE_HEADERS)
        for layer in (kwargs["headers"], headers):
            for name, value in layer.items():
                merged[name] = value
        kwargs["headers"] = merged
        try:
            response = await self.client.request(timeout=self.config.request_timeout, **kwargs)
        except httpx.RequestError as e:
            raise TransportError(
                str(e) or type(e).__name__,
                details={"error_type": type(e).__name__, "target_id": target_id},
            ) from e
        if not response.is_success:
            raise HttpStatusError(response.status_code, _response_message(response))

    # ------------------------------------------------------------------
    # Credential policy
    # ------------------------------------------------------------------

    def _snapshot_credentials(
        self, credentials: Union[CapturedCredentials, Mapping[str, str]]
    ) -> Dict[str, str]:
        if isinstance(credentials, CapturedCredentials):
            headers = credentials.snapshot()
            age = credentials.age(time.time()) if credentials.captured_at else None
        else:
            headers = dict(credentials)
            age = None

        if not header_lookup(headers, "authorization"):
            raise MissingCredentialsError()

        if age is not None:
            max_age = self.config.max_credential_age_s
            if max_age > 0 and age > max_age:
                raise StaleCredentialsError(age, max_age)
            if age > STALE_WARNING_S:
                log.warning(f"Captured credentials are {age:.0f}s old; calls may be rejected")
        return headers
