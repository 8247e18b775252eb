from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final

from ..protocol.messages import SYSINFO_REALTIME_REQUEST, RawDeviceResponse
from ..transport.base import DeviceTransport, Endpoint, ProbeError
from .cache import EndpointCache
from .normalize import CanonicalReading, to_canonical

logger = logging.getLogger(__name__)

DEFAULT_WAIT_S: Final[float] = 0.5
DEFAULT_FORGET_TIMEOUT_S: Final[float] = 30 * 60.0


@dataclass(slots=True)
class CycleReport:
    """What one reconciliation cycle saw and did (for logging and diagnostics)."""

    broadcast: list[Endpoint] = field(default_factory=list)
    discovered: list[Endpoint] = field(default_factory=list)
    rechecked: list[Endpoint] = field(default_factory=list)
    recovered: list[Endpoint] = field(default_factory=list)
    failed: list[Endpoint] = field(default_factory=list)
    evicted: list[Endpoint] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class _RecheckOutcome:
    endpoint: Endpoint
    response: RawDeviceResponse | None
    error: Exception | None = None


class ReconciliationEngine:
    """Runs one discovery/reconciliation cycle per scrape.

    Cycle:
    1. Broadcast a sysinfo+realtime probe and collect replies for `wait_s`.
    2. Unicast-recheck (concurrently) every cached endpoint the broadcast did not confirm.
    3. Evict endpoints whose recheck failed and which were last seen at least
       `forget_timeout_s` ago; keep failing endpoints that are still inside the window.
    4. Insert newly discovered endpoints and return readings from broadcast + rechecks.

    Cache mutations happen only after all probe results are known, so a cancelled scrape
    leaves the cache as it was.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        cache: EndpointCache | None = None,
        *,
        wait_s: float = DEFAULT_WAIT_S,
        forget_timeout_s: float = DEFAULT_FORGET_TIMEOUT_S,
        request: bytes = SYSINFO_REALTIME_REQUEST,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if wait_s <= 0:
            raise ValueError("wait_s must be > 0")
        if forget_timeout_s < 0:
            raise ValueError("forget_timeout_s must be >= 0")
        self._transport = transport
        self._clock = clock
        self.cache = cache if cache is not None else EndpointCache(clock=clock)
        self._wait_s = wait_s
        self._forget_timeout_s = forget_timeout_s
        self._request = request
        self.last_report: CycleReport | None = None

    async def collect(self) -> list[CanonicalReading]:
        return await self.run()

    async def run(self) -> list[CanonicalReading]:
        report = CycleReport()
        now = self._clock()

        confirmed: dict[Endpoint, RawDeviceResponse] = {}
        for endpoint, response in await self._transport.broadcast(self._request, self._wait_s):
            confirmed[endpoint] = response
        report.broadcast = sorted(confirmed)

        known = self.cache.snapshot()
        pending = [endpoint for endpoint in known if endpoint not in confirmed]
        report.rechecked = sorted(pending)

        outcomes: list[_RecheckOutcome] = []
        if pending:
            outcomes = list(await asyncio.gather(*(self._recheck(ep) for ep in pending)))

        recovered: dict[Endpoint, RawDeviceResponse] = {}
        stale: list[Endpoint] = []
        for outcome in outcomes:
            if outcome.response is not None:
                recovered[outcome.endpoint] = outcome.response
                continue
            report.failed.append(outcome.endpoint)
            # Eviction is judged on the pre-cycle timestamp from the snapshot.
            if now - known[outcome.endpoint] >= self._forget_timeout_s:
                stale.append(outcome.endpoint)

        if stale:
            self.cache.evict(stale)
            for endpoint in stale:
                logger.info(
                    "Forgetting device at %s (unseen for %.0fs)",
                    endpoint,
                    now - known[endpoint],
                )

        for endpoint, response in confirmed.items():
            if endpoint not in known:
                report.discovered.append(endpoint)
                logger.info(
                    "Discovered device %r (%s) at %s",
                    response.alias,
                    response.device_id,
                    endpoint,
                )
            self.cache.touch(endpoint, now)
        for endpoint in recovered:
            self.cache.touch(endpoint, now)

        report.recovered = sorted(recovered)
        report.failed.sort()
        report.evicted = sorted(stale)
        report.discovered.sort()
        self.last_report = report
        logger.debug(
            "Cycle: broadcast=%d rechecked=%d recovered=%d failed=%d evicted=%d discovered=%d",
            len(report.broadcast),
            len(report.rechecked),
            len(report.recovered),
            len(report.failed),
            len(report.evicted),
            len(report.discovered),
        )

        readings: list[CanonicalReading] = []
        for response in (*confirmed.values(), *recovered.values()):
            reading = to_canonical(response)
            if reading is not None:
                readings.append(reading)
        return readings

    async def _recheck(self, endpoint: Endpoint) -> _RecheckOutcome:
        try:
            response = await self._transport.unicast(endpoint, self._request, self._wait_s)
        except ProbeError as exc:
            logger.warning("Recheck of %s failed: %s", endpoint, exc)
            return _RecheckOutcome(endpoint=endpoint, response=None, error=exc)
        except Exception as exc:
            # One misbehaving device must not abort the scrape.
            logger.exception("Unexpected error rechecking %s", endpoint)
            return _RecheckOutcome(endpoint=endpoint, response=None, error=exc)
        return _RecheckOutcome(endpoint=endpoint, response=response)
