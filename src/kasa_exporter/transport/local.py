from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from ..protocol.codec import (
    LENGTH_PREFIX_SIZE,
    FrameError,
    frame,
    obscure,
    read_frame_length,
    reveal,
)
from ..protocol.messages import PayloadDecodeError, RawDeviceResponse, parse_device_response
from .base import (
    DeviceTransport,
    Endpoint,
    ProbeConnectionError,
    ProbeDecodeError,
    ProbeTimeout,
)

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_PORT: Final[int] = 9999


@dataclass(frozen=True)
class LocalTransportConfig:
    broadcast_host: str = "255.255.255.255"
    port: int = DEFAULT_DEVICE_PORT
    bind_host: str = "0.0.0.0"
    trace_path: Path | None = None


def _utc_ts() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _short_hex(blob: bytes, max_bytes: int = 48) -> str:
    hx = blob.hex()
    if len(blob) > max_bytes:
        return hx[: max_bytes * 2] + "..."
    return hx


class _ReplyCollector(asyncio.DatagramProtocol):
    """Buffers every datagram received on the broadcast socket."""

    def __init__(self) -> None:
        self.replies: list[tuple[bytes, tuple[str, int]]] = []

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.replies.append((data, (addr[0], addr[1])))

    def error_received(self, exc: Exception) -> None:
        logger.warning("Broadcast socket error: %s", exc)


class LocalTransport(DeviceTransport):
    """UDP broadcast + TCP unicast transport against Kasa devices on the local network."""

    def __init__(self, config: LocalTransportConfig | None = None) -> None:
        config = config or LocalTransportConfig()
        self._validate_config(config)
        self._config = config
        self._trace_seq = 0

    @staticmethod
    def _validate_config(config: LocalTransportConfig) -> None:
        if not (0 < config.port <= 0xFFFF):
            raise ValueError(f"port must be in range 1..65535, got {config.port}")
        if not config.broadcast_host.strip():
            raise ValueError("broadcast_host must not be empty")

    @property
    def config(self) -> LocalTransportConfig:
        return self._config

    def _trace(self, message: str) -> None:
        trace_path = self._config.trace_path
        if trace_path is None:
            return
        # Best-effort tracing: never let trace failures break a probe.
        with contextlib.suppress(OSError):
            trace_path.parent.mkdir(parents=True, exist_ok=True)
            with trace_path.open("a", encoding="utf-8") as f:
                f.write(f"{_utc_ts()} {message}\n")

    def _next_seq(self) -> int:
        self._trace_seq += 1
        return self._trace_seq

    async def broadcast(
        self,
        request: bytes,
        wait_s: float,
    ) -> list[tuple[Endpoint, RawDeviceResponse]]:
        seq = self._next_seq()
        target = (self._config.broadcast_host, self._config.port)
        loop = asyncio.get_running_loop()
        try:
            transport, collector = await loop.create_datagram_endpoint(
                _ReplyCollector,
                local_addr=(self._config.bind_host, 0),
                allow_broadcast=True,
            )
        except OSError as exc:
            logger.warning("Failed to open broadcast socket: %s", exc)
            self._trace(f"#{seq} BROADCAST_FAIL error={exc}")
            return []

        try:
            payload = obscure(request)
            self._trace(f"#{seq} BROADCAST to={target[0]}:{target[1]} len={len(payload)}")
            try:
                transport.sendto(payload, target)
            except OSError as exc:
                logger.warning("Failed to send broadcast probe to %s:%d: %s", *target, exc)
                return []
            await asyncio.sleep(wait_s)
        finally:
            transport.close()

        results: list[tuple[Endpoint, RawDeviceResponse]] = []
        for data, (host, port) in collector.replies:
            endpoint = Endpoint(host, port)
            self._trace(f"#{seq} RECV from={endpoint} hex={_short_hex(data)}")
            try:
                response = parse_device_response(reveal(data))
            except PayloadDecodeError as exc:
                logger.debug("Dropping malformed broadcast reply from %s: %s", endpoint, exc)
                self._trace(f"#{seq} DROP from={endpoint} error={exc}")
                continue
            results.append((endpoint, response))
        return results

    async def unicast(
        self,
        endpoint: Endpoint,
        request: bytes,
        wait_s: float,
    ) -> RawDeviceResponse:
        seq = self._next_seq()
        self._trace(f"#{seq} UNICAST to={endpoint}")
        try:
            plaintext = await asyncio.wait_for(self._exchange(endpoint, request), timeout=wait_s)
        except TimeoutError as exc:
            self._trace(f"#{seq} TIMEOUT to={endpoint}")
            raise ProbeTimeout(f"Timed out after {wait_s:.3f}s talking to {endpoint}") from exc
        self._trace(f"#{seq} RECV from={endpoint} len={len(plaintext)}")

        try:
            return parse_device_response(plaintext)
        except PayloadDecodeError as exc:
            raise ProbeDecodeError(f"Invalid reply from {endpoint}: {exc}") from exc

    async def _exchange(self, endpoint: Endpoint, request: bytes) -> bytes:
        try:
            reader, writer = await asyncio.open_connection(endpoint.host, endpoint.port)
        except OSError as exc:
            raise ProbeConnectionError(f"Failed connecting to {endpoint}: {exc}") from exc

        try:
            writer.write(frame(obscure(request)))
            await writer.drain()
            header = await reader.readexactly(LENGTH_PREFIX_SIZE)
            length = read_frame_length(header)
            body = await reader.readexactly(length)
        except FrameError as exc:
            raise ProbeDecodeError(f"Invalid frame from {endpoint}: {exc}") from exc
        except asyncio.IncompleteReadError as exc:
            raise ProbeConnectionError(
                f"Connection to {endpoint} closed after {len(exc.partial)} bytes "
                f"(expected {exc.expected})"
            ) from exc
        except OSError as exc:
            raise ProbeConnectionError(f"Failed talking to {endpoint}: {exc}") from exc
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

        return reveal(body)
