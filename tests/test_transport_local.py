from __future__ import annotations

import asyncio
import socket
import socketserver
import threading
from collections.abc import Coroutine, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from queue import Queue
from typing import Any

import pytest
from conftest import sysinfo_reply

from kasa_exporter.protocol.codec import frame, obscure, reveal
from kasa_exporter.protocol.messages import SYSINFO_REALTIME_REQUEST
from kasa_exporter.transport.base import (
    Endpoint,
    ProbeConnectionError,
    ProbeDecodeError,
    ProbeTimeout,
)
from kasa_exporter.transport.local import LocalTransport, LocalTransportConfig


@dataclass(frozen=True)
class _TcpReply:
    """How the fake plug answers one TCP connection.

    - `plaintext`: framed + obscured reply.
    - `raw`: bytes written verbatim (for framing errors).
    - neither: keep the connection open without answering (timeout tests).
    """

    plaintext: bytes | None = None
    raw: bytes | None = None


@contextmanager
def _run_plug_tcp_server(replies: list[_TcpReply]) -> Iterator[tuple[Endpoint, list[bytes]]]:
    """Run a local TCP server that mimics a plug's length-prefixed protocol."""

    requests: list[bytes] = []
    queue: Queue[_TcpReply] = Queue()
    for reply in replies:
        queue.put(reply)
    stop_event = threading.Event()

    class Handler(socketserver.StreamRequestHandler):
        def handle(self) -> None:  # noqa: D401 - socketserver signature
            header = self.rfile.read(4)
            length = int.from_bytes(header, "big")
            requests.append(reveal(self.rfile.read(length)))

            reply = queue.get_nowait()
            if reply.plaintext is not None:
                self.wfile.write(frame(obscure(reply.plaintext)))
            elif reply.raw is not None:
                self.wfile.write(reply.raw)
            else:
                stop_event.wait(timeout=5)
                return
            self.wfile.flush()

    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), Handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        host, port = server.server_address[:2]
        assert isinstance(host, str)
        yield Endpoint(host, port), requests
    finally:
        stop_event.set()
        server.shutdown()
        server.server_close()
        thread.join(timeout=1)


@contextmanager
def _run_plug_udp_server(datagrams: list[bytes]) -> Iterator[tuple[int, list[bytes]]]:
    """Answer every probe datagram with `datagrams` (already obscured)."""

    requests: list[bytes] = []
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(0.05)
    stop_event = threading.Event()

    def _serve() -> None:
        while not stop_event.is_set():
            try:
                data, addr = sock.recvfrom(4096)
            except TimeoutError:
                continue
            except OSError:
                return
            requests.append(reveal(data))
            for datagram in datagrams:
                sock.sendto(datagram, addr)

    thread = threading.Thread(target=_serve, daemon=True)
    thread.start()
    try:
        yield sock.getsockname()[1], requests
    finally:
        stop_event.set()
        thread.join(timeout=1)
        sock.close()


def _free_tcp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _loopback_transport(port: int, trace_path: Path | None = None) -> LocalTransport:
    return LocalTransport(
        LocalTransportConfig(
            broadcast_host="127.0.0.1",
            port=port,
            bind_host="127.0.0.1",
            trace_path=trace_path,
        )
    )


def test_broadcast_collects_and_decodes_replies() -> None:
    reply = obscure(sysinfo_reply("Kettle", "ID-A", {"power": 1200.0}))
    with _run_plug_udp_server([reply]) as (port, requests):
        transport = _loopback_transport(port)
        results = asyncio.run(transport.broadcast(SYSINFO_REALTIME_REQUEST, 0.3))

    assert requests == [SYSINFO_REALTIME_REQUEST]
    assert len(results) == 1
    endpoint, response = results[0]
    assert endpoint == Endpoint("127.0.0.1", port)
    assert response.alias == "Kettle"
    assert response.realtime is not None
    assert response.realtime.power == 1200.0


def test_broadcast_drops_malformed_replies() -> None:
    good = obscure(sysinfo_reply("Kettle", "ID-A", {"power": 5.0}))
    garbage = b"\x01\x02\x03not-a-plug"
    with _run_plug_udp_server([garbage, good]) as (port, _requests):
        transport = _loopback_transport(port)
        results = asyncio.run(transport.broadcast(SYSINFO_REALTIME_REQUEST, 0.3))

    assert [response.device_id for _endpoint, response in results] == ["ID-A"]


def test_broadcast_without_replies_returns_empty_after_wait() -> None:
    with _run_plug_udp_server([]) as (port, requests):
        transport = _loopback_transport(port)
        results, elapsed = asyncio.run(_timed(transport.broadcast(SYSINFO_REALTIME_REQUEST, 0.2)))

    assert results == []
    assert requests == [SYSINFO_REALTIME_REQUEST]
    assert 0.15 <= elapsed < 2.0


async def _timed(coro: Coroutine[Any, Any, Any]) -> tuple[Any, float]:
    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await coro
    return result, loop.time() - started


def test_broadcast_socket_failure_returns_empty() -> None:
    transport = LocalTransport(
        LocalTransportConfig(broadcast_host="127.0.0.1", port=9999, bind_host="203.0.113.7")
    )
    assert asyncio.run(transport.broadcast(SYSINFO_REALTIME_REQUEST, 0.1)) == []


def test_unicast_round_trip_uses_length_prefix_framing() -> None:
    plaintext = sysinfo_reply("Fridge", "ID-B", {"voltage_mv": 230000, "total_wh": 12})
    with _run_plug_tcp_server([_TcpReply(plaintext=plaintext)]) as (endpoint, requests):
        transport = _loopback_transport(endpoint.port)
        response = asyncio.run(transport.unicast(endpoint, SYSINFO_REALTIME_REQUEST, 1.0))

    assert requests == [SYSINFO_REALTIME_REQUEST]
    assert response.device_id == "ID-B"
    assert response.realtime is not None
    assert response.realtime.voltage_mv == 230000


def test_unicast_times_out_when_plug_does_not_answer() -> None:
    with _run_plug_tcp_server([_TcpReply()]) as (endpoint, _requests):
        transport = _loopback_transport(endpoint.port)
        with pytest.raises(ProbeTimeout, match="Timed out"):
            asyncio.run(transport.unicast(endpoint, SYSINFO_REALTIME_REQUEST, 0.2))


def test_unicast_connection_refused_raises_connection_error() -> None:
    endpoint = Endpoint("127.0.0.1", _free_tcp_port())
    transport = _loopback_transport(endpoint.port)
    with pytest.raises(ProbeConnectionError, match="Failed connecting"):
        asyncio.run(transport.unicast(endpoint, SYSINFO_REALTIME_REQUEST, 1.0))


def test_unicast_short_body_raises_connection_error() -> None:
    raw = (100).to_bytes(4, "big") + b"abc"
    with _run_plug_tcp_server([_TcpReply(raw=raw)]) as (endpoint, _requests):
        transport = _loopback_transport(endpoint.port)
        with pytest.raises(ProbeConnectionError, match="closed after 3 bytes"):
            asyncio.run(transport.unicast(endpoint, SYSINFO_REALTIME_REQUEST, 1.0))


def test_unicast_oversized_frame_raises_decode_error() -> None:
    raw = (0x7FFFFFFF).to_bytes(4, "big")
    with _run_plug_tcp_server([_TcpReply(raw=raw)]) as (endpoint, _requests):
        transport = _loopback_transport(endpoint.port)
        with pytest.raises(ProbeDecodeError, match="Invalid frame"):
            asyncio.run(transport.unicast(endpoint, SYSINFO_REALTIME_REQUEST, 1.0))


def test_unicast_garbled_payload_raises_decode_error() -> None:
    with _run_plug_tcp_server([_TcpReply(plaintext=b"{not json")]) as (endpoint, _requests):
        transport = _loopback_transport(endpoint.port)
        with pytest.raises(ProbeDecodeError, match="Invalid reply"):
            asyncio.run(transport.unicast(endpoint, SYSINFO_REALTIME_REQUEST, 1.0))


_NAN_REPLY = (
    b'{"system":{"get_sysinfo":{"alias":"Broken","deviceId":"ID-X"}},'
    b'"emeter":{"get_realtime":{"voltage_mv":NaN}}}'
)
_HUGE_ID_REPLY = b'{"system":{"get_sysinfo":{"alias":"Broken","deviceId":' + b"9" * 5000 + b"}}}"


@pytest.mark.parametrize("bad_reply", [_NAN_REPLY, _HUGE_ID_REPLY])
def test_broadcast_drops_reply_with_bad_values_next_to_good_one(bad_reply: bytes) -> None:
    good = obscure(sysinfo_reply("Garage", "ID-G", {"power_mw": 1500}))
    with _run_plug_udp_server([obscure(bad_reply), good]) as (port, _requests):
        transport = _loopback_transport(port)
        results = asyncio.run(transport.broadcast(SYSINFO_REALTIME_REQUEST, 0.3))

    assert [response.device_id for _endpoint, response in results] == ["ID-G"]


@pytest.mark.parametrize("bad_reply", [_NAN_REPLY, _HUGE_ID_REPLY])
def test_unicast_reply_with_bad_values_raises_decode_error(bad_reply: bytes) -> None:
    with _run_plug_tcp_server([_TcpReply(plaintext=bad_reply)]) as (endpoint, _requests):
        transport = _loopback_transport(endpoint.port)
        with pytest.raises(ProbeDecodeError, match="Invalid reply"):
            asyncio.run(transport.unicast(endpoint, SYSINFO_REALTIME_REQUEST, 1.0))


def test_trace_file_records_probes(tmp_path: Path) -> None:
    trace_path = tmp_path / "trace" / "kasa.log"
    plaintext = sysinfo_reply("Fridge", "ID-B", {"power": 1.0})
    with _run_plug_tcp_server([_TcpReply(plaintext=plaintext)]) as (endpoint, _requests):
        transport = _loopback_transport(endpoint.port, trace_path=trace_path)
        asyncio.run(transport.unicast(endpoint, SYSINFO_REALTIME_REQUEST, 1.0))

    text = trace_path.read_text(encoding="utf-8")
    assert f"#1 UNICAST to={endpoint}" in text
    assert f"#1 RECV from={endpoint}" in text


@pytest.mark.parametrize(
    ("config", "match"),
    [
        (LocalTransportConfig(port=0), "port"),
        (LocalTransportConfig(port=70000), "port"),
        (LocalTransportConfig(broadcast_host=" "), "broadcast_host"),
    ],
)
def test_invalid_config_is_rejected(config: LocalTransportConfig, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        LocalTransport(config)
