"""Tests for autofwd/forwarder/socket.py

These use real loopback sockets; the target is a small echo server.
"""

import asyncio
import os
from unittest.mock import MagicMock

import pytest

from autofwd.forwarder.socket import SocketForwarder, SocketForwardingOptions
from tests.conftest import start_echo_server, unused_tcp_port, wait_for


def tcp_options(target_port: int, target_address: str = "127.0.0.1") -> SocketForwardingOptions:
    return SocketForwardingOptions(
        source_type="tcp",
        source_address="127.0.0.1",
        source_port=0,
        target_type="tcp",
        target_address=target_address,
        target_port=target_port,
    )


async def roundtrip(reader, writer, payload: bytes) -> bytes:
    async def send():
        writer.write(payload)
        await writer.drain()

    _, received = await asyncio.wait_for(
        asyncio.gather(send(), reader.readexactly(len(payload))), timeout=5.0
    )
    return received


class TestTcpRelay:
    @pytest.mark.asyncio
    async def test_bytes_flow_both_ways(self):
        echo, echo_port = await start_echo_server()
        forwarder = SocketForwarder(tcp_options(echo_port))
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            assert await roundtrip(reader, writer, b"hello") == b"hello"
            writer.close()
        finally:
            await forwarder.stop()
            echo.close()
            await echo.wait_closed()

    @pytest.mark.asyncio
    async def test_large_payload_is_intact(self):
        echo, echo_port = await start_echo_server()
        forwarder = SocketForwarder(tcp_options(echo_port))
        await forwarder.start()
        payload = os.urandom(256 * 1024)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            assert await roundtrip(reader, writer, payload) == payload
            writer.close()
        finally:
            await forwarder.stop()
            echo.close()
            await echo.wait_closed()

    @pytest.mark.asyncio
    async def test_target_speaks_first(self):
        async def greet(reader, writer):
            writer.write(b"220 ready\r\n")
            await writer.drain()
            writer.close()

        target = await asyncio.start_server(greet, host="127.0.0.1", port=0)
        forwarder = SocketForwarder(tcp_options(target.sockets[0].getsockname()[1]))
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            assert await asyncio.wait_for(reader.read(), timeout=2.0) == b"220 ready\r\n"
            writer.close()
        finally:
            await forwarder.stop()
            target.close()
            await target.wait_closed()

    @pytest.mark.asyncio
    async def test_localhost_target(self):
        echo, echo_port = await start_echo_server()
        forwarder = SocketForwarder(tcp_options(echo_port, target_address="localhost"))
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            assert await roundtrip(reader, writer, b"ping") == b"ping"
            writer.close()
        finally:
            await forwarder.stop()
            echo.close()
            await echo.wait_closed()

    @pytest.mark.asyncio
    async def test_unreachable_target_drops_connection(self):
        forwarder = SocketForwarder(tcp_options(unused_tcp_port()))
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
            writer.close()
            await wait_for(lambda: forwarder.active_relays == 0)
        finally:
            await forwarder.stop()

    @pytest.mark.asyncio
    async def test_target_close_ends_source(self):
        accepted = asyncio.Event()
        target_writers = []

        async def hold(reader, writer):
            target_writers.append(writer)
            accepted.set()

        target = await asyncio.start_server(hold, host="127.0.0.1", port=0)
        forwarder = SocketForwarder(tcp_options(target.sockets[0].getsockname()[1]))
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            await asyncio.wait_for(accepted.wait(), timeout=2.0)
            target_writers[0].close()
            assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
            writer.close()
        finally:
            await forwarder.stop()
            target.close()
            await target.wait_closed()


class TestUnixSource:
    @pytest.mark.asyncio
    async def test_unix_to_tcp(self, tmp_path):
        echo, echo_port = await start_echo_server()
        path = tmp_path / "fwd.sock"
        path.write_text("stale")
        forwarder = SocketForwarder(
            SocketForwardingOptions(
                source_type="unix",
                source_address=str(path),
                target_type="tcp",
                target_address="127.0.0.1",
                target_port=echo_port,
            )
        )
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_unix_connection(str(path))
            assert await roundtrip(reader, writer, b"over unix") == b"over unix"
            writer.close()
        finally:
            await forwarder.stop()
            echo.close()
            await echo.wait_closed()

        assert not path.exists()

    @pytest.mark.asyncio
    async def test_tcp_to_unix(self, tmp_path):
        path = tmp_path / "target.sock"

        async def echo(reader, writer):
            data = await reader.read(1024)
            writer.write(data)
            await writer.drain()
            writer.close()

        target = await asyncio.start_unix_server(echo, path=str(path))
        forwarder = SocketForwarder(
            SocketForwardingOptions(
                source_type="tcp",
                source_address="127.0.0.1",
                source_port=0,
                target_type="unix",
                target_address=str(path),
            )
        )
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            assert await roundtrip(reader, writer, b"to unix") == b"to unix"
            writer.close()
        finally:
            await forwarder.stop()
            target.close()
            await target.wait_closed()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_twice_keeps_listener(self):
        forwarder = SocketForwarder(tcp_options(unused_tcp_port()))
        await forwarder.start()
        port = forwarder.bound_port
        await forwarder.start()
        assert forwarder.bound_port == port
        await forwarder.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        forwarder = SocketForwarder(tcp_options(unused_tcp_port()))
        await forwarder.stop()
        assert not forwarder.running

    @pytest.mark.asyncio
    async def test_stop_twice(self):
        forwarder = SocketForwarder(tcp_options(unused_tcp_port()))
        await forwarder.start()
        await forwarder.stop()
        await forwarder.stop()
        assert not forwarder.running

    @pytest.mark.asyncio
    async def test_tcp_source_needs_port(self):
        options = tcp_options(unused_tcp_port())
        options.source_port = None
        with pytest.raises(ValueError):
            await SocketForwarder(options).start()

    @pytest.mark.asyncio
    async def test_stop_waits_for_open_connections(self):
        echo, echo_port = await start_echo_server()
        forwarder = SocketForwarder(tcp_options(echo_port))
        await forwarder.start()
        listen_port = forwarder.bound_port

        reader, writer = await asyncio.open_connection("127.0.0.1", listen_port)
        assert await roundtrip(reader, writer, b"before") == b"before"

        stopping = asyncio.create_task(forwarder.stop())
        await asyncio.sleep(0.1)
        assert not stopping.done()

        # The listener is gone but the existing relay still works
        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", listen_port)
        assert await roundtrip(reader, writer, b"during") == b"during"

        writer.close()
        await asyncio.wait_for(stopping, timeout=2.0)
        assert forwarder.active_relays == 0

        echo.close()
        await echo.wait_closed()

    @pytest.mark.asyncio
    async def test_connection_accepted_during_stop_is_dropped(self):
        forwarder = SocketForwarder(tcp_options(unused_tcp_port()))
        await forwarder.start()
        writer = MagicMock()

        # Accepted but its handler has not run yet
        forwarder._on_accept(MagicMock(), writer)
        assert forwarder.active_relays == 1

        await asyncio.wait_for(forwarder.stop(), timeout=2.0)

        writer.close.assert_called_once()
        assert forwarder.active_relays == 0

    def test_forwarding_info(self):
        forwarder = SocketForwarder(
            SocketForwardingOptions(
                source_type="tcp",
                source_address="0.0.0.0",
                source_port=19877,
                target_type="tcp",
                target_address="localhost",
                target_port=19876,
            )
        )
        assert forwarder.forwarding_info().startswith(
            "tcp://0.0.0.0:19877 -> tcp://localhost:19876 on "
        )
