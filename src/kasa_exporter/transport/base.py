from __future__ import annotations

from abc import ABC, abstractmethod
from typing import NamedTuple

from ..protocol.messages import RawDeviceResponse


class Endpoint(NamedTuple):
    """Network address (IP + port) of one device."""

    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class ProbeError(Exception):
    """Base class for device probe errors."""


class ProbeTimeout(ProbeError):
    """Raised when a probe does not complete within its wait window."""


class ProbeConnectionError(ProbeError):
    """Raised on connect or socket I/O failure."""


class ProbeDecodeError(ProbeError):
    """Raised when a device reply cannot be decoded into a `RawDeviceResponse`."""


class DeviceTransport(ABC):
    """Transport interface for discovering and querying devices."""

    @abstractmethod
    async def broadcast(
        self,
        request: bytes,
        wait_s: float,
    ) -> list[tuple[Endpoint, RawDeviceResponse]]:
        """Send one broadcast probe and collect every decodable reply within `wait_s`.

        Args:
            request: Plaintext JSON request (obscured by the transport).
            wait_s: Collection window in seconds.

        Malformed replies are dropped. Send failures yield an empty list.
        """

    @abstractmethod
    async def unicast(
        self,
        endpoint: Endpoint,
        request: bytes,
        wait_s: float,
    ) -> RawDeviceResponse:
        """Query a single device directly.

        Raises:
            ProbeTimeout: `wait_s` elapsed before the exchange completed.
            ProbeConnectionError: Connect or I/O failure.
            ProbeDecodeError: Reply is structurally invalid.
        """
