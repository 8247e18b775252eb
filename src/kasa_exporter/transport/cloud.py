from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Final

import httpx

from ..protocol.messages import PayloadDecodeError, RawRealtime, parse_realtime

logger = logging.getLogger(__name__)

DEFAULT_CLOUD_URL: Final[str] = "https://wap.tplinkcloud.com/"
TOKEN_EXPIRED_ERROR_CODE: Final[int] = -20651
_EMETER_REALTIME_REQUEST: Final[dict[str, Any]] = {"emeter": {"get_realtime": {}}}


class CloudError(Exception):
    """Base class for cloud relay errors."""


class CloudApiError(CloudError):
    """Raised when the cloud API answers with an error code or an unusable result."""

    def __init__(self, message: str, *, error_code: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class CloudTransportError(CloudError):
    """Raised on HTTP/network failure or a non-JSON response."""


@dataclass(frozen=True)
class CloudConfig:
    username: str
    password: str
    app_type: str = "kasa_exporter"
    url: str = DEFAULT_CLOUD_URL
    timeout_s: float = 10.0


@dataclass(frozen=True, slots=True)
class CloudDevice:
    alias: str
    device_id: str
    model: str = ""
    status: int = 0


class CloudClient:
    """Authenticated client for the TP-Link cloud relay.

    The token from `login` is reused for every call. When the API reports an expired token
    the client logs in again and retries the call exactly once; any other error code, or a
    second expiry, is raised as `CloudApiError`.
    """

    def __init__(self, config: CloudConfig, *, http: httpx.AsyncClient | None = None) -> None:
        self._validate_config(config)
        self._config = config
        self._http = http or httpx.AsyncClient(timeout=config.timeout_s)
        self._token: str | None = None
        self._terminal_uuid = str(uuid.uuid4())

    @staticmethod
    def _validate_config(config: CloudConfig) -> None:
        if not config.username or not config.password:
            raise ValueError("cloud username and password are required")
        if config.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")

    @property
    def token(self) -> str | None:
        return self._token

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, method: str, params: dict[str, Any], *, token: str | None) -> Any:
        query = {"token": token} if token is not None else None
        body = {"method": method, "params": params}
        logger.debug("> cloud request method=%s", method)
        try:
            response = await self._http.post(self._config.url, params=query, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CloudTransportError(f"Cloud request {method!r} failed: {exc}") from exc
        try:
            data = response.json()
        except (ValueError, RecursionError) as exc:
            raise CloudTransportError(
                f"Cloud response to {method!r} is not JSON: {response.text[:200]!r}"
            ) from exc
        if not isinstance(data, dict):
            raise CloudTransportError(f"Cloud response to {method!r} is not a JSON object")
        logger.debug("< cloud response method=%s error_code=%s", method, data.get("error_code"))
        return data

    @staticmethod
    def _result(method: str, data: dict[str, Any]) -> Any:
        error_code = data.get("error_code", 0)
        if error_code != 0:
            message = data.get("msg") or ""
            raise CloudApiError(
                f"Cloud call {method!r} failed: code={error_code} message={message}",
                error_code=error_code if isinstance(error_code, int) else None,
            )
        return data.get("result")

    async def login(self) -> str:
        params = {
            "appType": self._config.app_type,
            "cloudUserName": self._config.username,
            "cloudPassword": self._config.password,
            "terminalUUID": self._terminal_uuid,
        }
        data = await self._post("login", params, token=None)
        result = self._result("login", data)
        token = result.get("token") if isinstance(result, dict) else None
        if not isinstance(token, str) or not token:
            raise CloudApiError("Empty auth response: no token in login result")
        self._token = token
        logger.info("Logged in to cloud relay as %s", self._config.username)
        return token

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        if self._token is None:
            await self.login()
        data = await self._post(method, params, token=self._token)
        if data.get("error_code") == TOKEN_EXPIRED_ERROR_CODE:
            logger.info("Cloud token expired; logging in again")
            await self.login()
            data = await self._post(method, params, token=self._token)
        return self._result(method, data)

    async def get_device_list(self) -> list[CloudDevice]:
        result = await self._call("getDeviceList", {})
        if not isinstance(result, dict) or not isinstance(result.get("deviceList"), list):
            raise CloudApiError("Device list response has no deviceList")

        devices: list[CloudDevice] = []
        for entry in result["deviceList"]:
            if not isinstance(entry, dict):
                continue
            device_id = entry.get("deviceId")
            if not isinstance(device_id, str) or not device_id:
                continue
            status = entry.get("status")
            devices.append(
                CloudDevice(
                    alias=str(entry.get("alias") or ""),
                    device_id=device_id,
                    model=str(entry.get("deviceModel") or ""),
                    status=status if isinstance(status, int) else 0,
                )
            )
        return devices

    async def get_realtime(self, device_id: str) -> RawRealtime:
        """Read emeter realtime data from a device via the passthrough relay.

        The passthrough envelope is double-encoded: `requestData` and `responseData` are JSON
        documents serialized into strings inside the outer JSON request/response.
        """

        params = {
            "deviceId": device_id,
            "requestData": json.dumps(_EMETER_REALTIME_REQUEST, separators=(",", ":")),
        }
        result = await self._call("passthrough", params)
        if not isinstance(result, dict) or not isinstance(result.get("responseData"), str):
            raise CloudApiError(f"Empty passthrough response for device {device_id}")

        try:
            inner = json.loads(result["responseData"])
        except (ValueError, RecursionError) as exc:
            raise CloudApiError(
                f"Passthrough response for device {device_id} is not JSON: "
                f"{result['responseData'][:200]!r}"
            ) from exc

        emeter = inner.get("emeter") if isinstance(inner, dict) else None
        if not isinstance(emeter, dict) or emeter.get("get_realtime") is None:
            raise CloudApiError(f"Empty emeter response for device {device_id}")
        try:
            realtime = parse_realtime(emeter["get_realtime"])
        except PayloadDecodeError as exc:
            raise CloudApiError(f"Invalid emeter response for device {device_id}: {exc}") from exc
        if realtime is None:
            raise CloudApiError(f"Device {device_id} reported an emeter error")
        return realtime
