from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from ..protocol.codec import obscure, reveal
from ..protocol.messages import PayloadDecodeError, RawDeviceResponse, parse_device_response
from .base import (
    DeviceTransport,
    Endpoint,
    ProbeConnectionError,
    ProbeDecodeError,
    ProbeTimeout,
)

_ERRORS: Final[dict[str, type[Exception]]] = {
    "timeout": ProbeTimeout,
    "connection": ProbeConnectionError,
    "decode": ProbeDecodeError,
}


@dataclass(frozen=True, slots=True)
class _FixtureDevice:
    endpoint: Endpoint
    reply: bytes | None
    error: str | None
    broadcast: bool
    seed: bool


class DummyTransport(DeviceTransport):
    """Fixture-backed transport used for --dry-run.

    The fixture is a JSON object with a top-level `devices` object keyed by `host:port`:

        {"devices": {"192.168.1.10:9999": {"reply": {...}, "broadcast": true},
                     "192.168.1.11:9999": {"reply": {...}, "broadcast": false, "seed": true},
                     "192.168.1.12:9999": {"error": "timeout", "seed": true}}}

    - `reply`: the device's plaintext JSON reply; it is obscured and revealed on the way
      through so dry runs exercise the same codec path as real devices.
    - `broadcast` (default true): whether the device answers the broadcast probe.
    - `error`: one of timeout/connection/decode, raised on unicast.
    - `seed` (default false): endpoint is expected to already be in the cache.
    """

    def __init__(self, fixture_path: Path) -> None:
        self._fixture_path = fixture_path
        self._devices: dict[Endpoint, _FixtureDevice] = {}
        self.broadcast_calls = 0
        self.unicast_calls: list[Endpoint] = []
        self._load_fixture()

    @property
    def seed_endpoints(self) -> list[Endpoint]:
        return sorted(ep for ep, device in self._devices.items() if device.seed)

    async def broadcast(
        self,
        request: bytes,  # noqa: ARG002
        wait_s: float,  # noqa: ARG002
    ) -> list[tuple[Endpoint, RawDeviceResponse]]:
        self.broadcast_calls += 1
        await asyncio.sleep(0)
        results: list[tuple[Endpoint, RawDeviceResponse]] = []
        for endpoint, device in self._devices.items():
            if not device.broadcast or device.reply is None:
                continue
            try:
                results.append((endpoint, self._decode(device.reply)))
            except PayloadDecodeError:
                continue
        return results

    async def unicast(
        self,
        endpoint: Endpoint,
        request: bytes,  # noqa: ARG002
        wait_s: float,
    ) -> RawDeviceResponse:
        self.unicast_calls.append(endpoint)
        await asyncio.sleep(0)
        device = self._devices.get(endpoint)
        if device is None:
            raise ProbeConnectionError(f"Fixture has no device at {endpoint}")
        if device.error is not None:
            raise _ERRORS[device.error](
                f"Fixture marks {endpoint} as {device.error} (wait {wait_s:.3f}s)"
            )
        assert device.reply is not None
        try:
            return self._decode(device.reply)
        except PayloadDecodeError as exc:
            raise ProbeDecodeError(f"Invalid reply from {endpoint}: {exc}") from exc

    @staticmethod
    def _decode(reply: bytes) -> RawDeviceResponse:
        return parse_device_response(reveal(obscure(reply)))

    @staticmethod
    def _parse_endpoint_key(key: str) -> Endpoint:
        host, sep, port_txt = key.rpartition(":")
        if not sep or not host:
            raise ValueError(f"Invalid device key (expected host:port): {key!r}")
        host = host.removeprefix("[").removesuffix("]")
        try:
            port = int(port_txt, 10)
        except ValueError as exc:
            raise ValueError(f"Invalid device key port: {key!r}") from exc
        if not (0 < port <= 0xFFFF):
            raise ValueError(f"Device key port out of range 1..65535: {key!r}")
        return Endpoint(host, port)

    def _load_fixture(self) -> None:
        raw = self._fixture_path.read_text(encoding="utf-8")
        data: Any = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Fixture root must be a JSON object")

        devices = data.get("devices")
        if not isinstance(devices, dict):
            raise ValueError('Fixture must contain top-level key "devices" as an object')

        for key, entry in devices.items():
            endpoint = self._parse_endpoint_key(key)
            if not isinstance(entry, dict):
                raise ValueError(f"Device {key!r} must be a JSON object")

            reply_obj = entry.get("reply")
            error = entry.get("error")
            if reply_obj is None and error is None:
                raise ValueError(f'Device {key!r} must contain "reply" or "error"')
            if error is not None and error not in _ERRORS:
                raise ValueError(
                    f"Device {key!r} has unknown error {error!r} "
                    f"(expected one of: {', '.join(sorted(_ERRORS))})"
                )

            broadcast = entry.get("broadcast", error is None)
            seed = entry.get("seed", False)
            if not isinstance(broadcast, bool) or not isinstance(seed, bool):
                raise ValueError(f'Device {key!r} fields "broadcast" and "seed" must be booleans')

            reply: bytes | None = None
            if reply_obj is not None:
                if isinstance(reply_obj, str):
                    reply = reply_obj.encode("utf-8")
                else:
                    reply = json.dumps(reply_obj, separators=(",", ":")).encode("utf-8")

            self._devices[endpoint] = _FixtureDevice(
                endpoint=endpoint,
                reply=reply,
                error=error,
                broadcast=broadcast,
                seed=seed,
            )
