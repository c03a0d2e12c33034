# src/keypool/prober.py

import asyncio
import logging
import time
from typing import AsyncGenerator, Dict, Mapping, Optional, Sequence

from .config import DEFAULT_BATCH_DELAY_MS
from .error_handler import classify_probe_error, mask_credential
from .failure_logger import log_probe_failure
from .models import (
    BatchProgress,
    KeyPolicy,
    KeyRecord,
    ProbeMode,
    ProbeOutcome,
    ProbeSuccess,
)
from .pool import apply_results
from .transports import ProbeRequest, ProbeTransport
from .usage_tracker import record_outcome

lib_logger = logging.getLogger("keypool")


class NoDataReceivedError(Exception):
    """Raised when a streamed probe finishes without yielding anything."""

    def __init__(self):
        super().__init__("no data received")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class KeyProber:
    """
    Tests credentials with a minimal synthetic request and turns the result
    into a ProbeOutcome.

    Probes never raise and never retry: every transport error is classified
    into an Error or RateLimited outcome. Task cancellation is the one
    exception and always propagates.

    A batch is probed strictly one key at a time with a pause in between, so
    keys sharing one upstream quota do not push each other into rate limits.
    """

    def __init__(
        self,
        transport: ProbeTransport,
        batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS,
        log_failures: bool = True,
    ):
        self.transport = transport
        self.batch_delay_ms = batch_delay_ms
        self.log_failures = log_failures

    async def _await_first_chunk(self, request: ProbeRequest):
        stream = self.transport.stream(request)
        received = False
        try:
            async for _ in stream:
                received = True
                # The server has started responding; that is all a probe needs.
                break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        if not received:
            raise NoDataReceivedError()

    async def probe_one(
        self,
        key: KeyRecord,
        request: ProbeRequest,
        mode: ProbeMode = ProbeMode.AWAIT,
    ) -> ProbeOutcome:
        """
        Probes a single key.

        Args:
            key: The key under test; only its secret is substituted into the request.
            request: The fixed minimal request.
            mode: AWAIT waits for the full response, FIRST_BYTE succeeds on the
                first streamed chunk and abandons the rest.

        Returns:
            ProbeSuccess with the elapsed time, or the classified failure.
        """
        keyed_request = request.with_credential(key.secret)
        start = time.monotonic()
        try:
            if mode == ProbeMode.FIRST_BYTE:
                await self._await_first_chunk(keyed_request)
            else:
                await self.transport.complete(keyed_request)
        except Exception as e:
            outcome = classify_probe_error(e)
            lib_logger.info(
                f"Probe for key {mask_credential(key.secret)} failed after {_elapsed_ms(start)}ms: "
                f"{type(e).__name__} classified as {outcome.kind}."
            )
            if self.log_failures:
                log_probe_failure(key, outcome, model=request.model, error=e)
            return outcome

        elapsed = _elapsed_ms(start)
        lib_logger.info(
            f"Probe for key {mask_credential(key.secret)} succeeded in {elapsed}ms ({mode.value})."
        )
        return ProbeSuccess(response_time_ms=elapsed)

    async def probe_batch(
        self,
        keys: Sequence[KeyRecord],
        request: ProbeRequest,
        mode: ProbeMode = ProbeMode.AWAIT,
        delay_ms: Optional[int] = None,
    ) -> AsyncGenerator[BatchProgress, None]:
        """
        Probes keys in order, yielding progress before each probe and once at
        the end, i.e. `len(keys) + 1` snapshots in total.

        Nothing runs until the consumer pulls. If the consumer stops pulling,
        no further probes are issued.
        """
        delay_ms = self.batch_delay_ms if delay_ms is None else delay_ms
        total = len(keys)
        results: Dict[str, ProbeOutcome] = {}

        for index, key in enumerate(keys):
            yield BatchProgress(
                total=total,
                completed=index,
                current_key_id=key.id,
                results=dict(results),
            )
            results[key.id] = await self.probe_one(key, request, mode)
            if index < total - 1 and delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)

        failed = sum(1 for outcome in results.values() if not isinstance(outcome, ProbeSuccess))
        lib_logger.info(f"Batch probe finished: {total - failed}/{total} keys healthy.")
        yield BatchProgress(
            total=total,
            completed=total,
            current_key_id=None,
            results=dict(results),
        )

    @staticmethod
    def apply_outcome(
        key: KeyRecord,
        outcome: ProbeOutcome,
        policy: Optional[KeyPolicy] = None,
        now: Optional[int] = None,
    ) -> KeyRecord:
        """Folds a probe outcome into the key record."""
        return record_outcome(key, outcome, policy, now)

    @staticmethod
    def apply_results(
        pool: Sequence[KeyRecord],
        results: Mapping[str, ProbeOutcome],
        policy: Optional[KeyPolicy] = None,
        now: Optional[int] = None,
    ):
        """Folds a batch's results into the pool; keys without a result are unchanged."""
        return apply_results(pool, results, policy, now)

