from __future__ import annotations

import json
from typing import Any

import pytest


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def sysinfo_reply(
    alias: str,
    device_id: str,
    realtime: dict[str, Any] | None = None,
) -> bytes:
    """Plaintext JSON reply as sent by a plug for the sysinfo+realtime request."""

    body: dict[str, Any] = {
        "system": {"get_sysinfo": {"alias": alias, "deviceId": device_id, "model": "HS110(EU)"}}
    }
    if realtime is not None:
        body["emeter"] = {"get_realtime": {**realtime, "err_code": 0}}
    return json.dumps(body).encode("utf-8")
