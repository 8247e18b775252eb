from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ..protocol.messages import RawDeviceResponse
from ..transport.cloud import CloudClient, CloudDevice, CloudError
from .normalize import CanonicalReading, to_canonical

logger = logging.getLogger(__name__)


class ReadingSource(Protocol):
    """Anything that can list the currently reachable devices with their readings."""

    async def collect(self) -> list[CanonicalReading]:
        """Return the canonical readings for one scrape. Must not raise for per-device errors."""


class CloudSource:
    """Reads every device registered to a cloud account through the passthrough relay."""

    def __init__(self, client: CloudClient) -> None:
        self._client = client

    async def collect(self) -> list[CanonicalReading]:
        try:
            devices = await self._client.get_device_list()
        except CloudError as exc:
            logger.warning("Cloud device list failed: %s", exc)
            return []

        readings = await asyncio.gather(*(self._read(device) for device in devices))
        return [reading for reading in readings if reading is not None]

    async def _read(self, device: CloudDevice) -> CanonicalReading | None:
        try:
            realtime = await self._client.get_realtime(device.device_id)
        except CloudError as exc:
            logger.warning("Cloud read of %r (%s) failed: %s", device.alias, device.device_id, exc)
            return None
        return to_canonical(
            RawDeviceResponse(alias=device.alias, device_id=device.device_id, realtime=realtime)
        )


class MergedSource:
    """Runs several sources concurrently and concatenates their readings."""

    def __init__(self, *sources: ReadingSource) -> None:
        if not sources:
            raise ValueError("MergedSource needs at least one source")
        self._sources = sources

    async def collect(self) -> list[CanonicalReading]:
        results = await asyncio.gather(
            *(source.collect() for source in self._sources),
            return_exceptions=True,
        )
        readings: list[CanonicalReading] = []
        for source, result in zip(self._sources, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "Reading source %s failed",
                    type(source).__name__,
                    exc_info=result,
                )
                continue
            readings.extend(result)
        return readings
