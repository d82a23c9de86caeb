from __future__ import annotations

import asyncio
import socket

import pytest

from filerep.config import Destination
from filerep.constants import ACK, NACK
from filerep.digest import digest_bytes
from filerep.errors import (
    DeliveryRejectedError,
    DestinationUnreachableError,
    FrameError,
    LinkError,
    SourceFileError,
)
from filerep.frame import read_header
from filerep.net import Impairment
from filerep.receiver import ReceiverServer
from filerep.sender import SenderLink


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_send_publishes_file(tmp_path):
    src = tmp_path / "src.bin"
    src.write_bytes(b"hello world")
    dest = tmp_path / "dest"

    async def run():
        async with ReceiverServer(dest, host="127.0.0.1", port=0) as server:
            link = SenderLink(Destination("127.0.0.1", server.port))
            try:
                result = await link.send(src, "a/b.bin")
                nodelay = link._writer.get_extra_info("socket").getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY)
            finally:
                await link.close()
            return result, nodelay

    result, nodelay = asyncio.run(run())
    assert result.ok
    assert result.attempts == 1
    assert result.size == 11
    assert nodelay != 0
    assert (dest / "a" / "b.bin").read_bytes() == b"hello world"


def test_connection_is_reused(tmp_path):
    dest = tmp_path / "dest"
    files = []
    for i in range(3):
        f = tmp_path / f"f{i}.txt"
        f.write_text(f"file {i}")
        files.append(f)

    async def run():
        async with ReceiverServer(dest, host="127.0.0.1", port=0) as server:
            link = SenderLink(Destination("127.0.0.1", server.port))
            try:
                for f in files:
                    await link.send(f, f.name)
            finally:
                await link.close()
            return link.connections

    assert asyncio.run(run()) == 1
    assert sorted(p.name for p in dest.iterdir()) == ["f0.txt", "f1.txt", "f2.txt"]


def test_waits_for_receiver_to_come_up(tmp_path):
    src = tmp_path / "late.txt"
    src.write_bytes(b"eventually")
    dest = tmp_path / "dest"
    port = _free_port()

    async def run():
        link = SenderLink(Destination("127.0.0.1", port), backoff_s=0.05)
        task = asyncio.create_task(link.send(src, "late.txt"))
        await asyncio.sleep(0.3)
        assert not task.done()
        async with ReceiverServer(dest, host="127.0.0.1", port=port):
            try:
                return await asyncio.wait_for(task, timeout=5)
            finally:
                await link.close()

    result = asyncio.run(run())
    assert result.ok
    assert (dest / "late.txt").read_bytes() == b"eventually"


def test_reconnects_after_receiver_restart(tmp_path):
    src = tmp_path / "f.txt"
    dest = tmp_path / "dest"

    async def run():
        first = ReceiverServer(dest, host="127.0.0.1", port=0)
        await first.start()
        port = first.port
        link = SenderLink(Destination("127.0.0.1", port), backoff_s=0.05)
        try:
            src.write_bytes(b"before restart")
            await link.send(src, "f.txt")
            await first.close()

            async with ReceiverServer(dest, host="127.0.0.1", port=port):
                src.write_bytes(b"after restart")
                result = await asyncio.wait_for(link.send(src, "f.txt"), timeout=5)
        finally:
            await link.close()
        return result, link.connections

    result, connections = asyncio.run(run())
    assert result.ok
    assert connections == 2
    assert (dest / "f.txt").read_bytes() == b"after restart"


def test_corruption_is_retried_once_then_reported(tmp_path):
    src = tmp_path / "f.bin"
    src.write_bytes(b"x" * 4096)
    dest = tmp_path / "dest"

    async def run():
        async with ReceiverServer(dest, host="127.0.0.1", port=0) as server:
            link = SenderLink(Destination("127.0.0.1", server.port), impairment=Impairment(corrupt_rate=1.0))
            try:
                with pytest.raises(DeliveryRejectedError):
                    await link.send(src, "f.bin")
                # rejection does not cost the connection
                assert link.connected
            finally:
                await link.close()

    asyncio.run(run())
    assert not (dest / "f.bin").exists()
    assert list(dest.rglob("*.part")) == []


def test_nack_retry_rereads_file(tmp_path):
    src = tmp_path / "f.txt"
    src.write_bytes(b"first version")
    headers = []

    async def handle(reader, writer):
        for reply in (NACK, ACK):
            header = await read_header(reader)
            await reader.readexactly(header.size)
            headers.append(header)
            if reply == NACK:
                src.write_bytes(b"second, longer version")
            writer.write(bytes([reply]))
            await writer.drain()
        writer.close()

    async def run():
        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        link = SenderLink(Destination("127.0.0.1", port))
        try:
            return await link.send(src, "f.txt")
        finally:
            await link.close()
            server.close()
            await server.wait_closed()

    result = asyncio.run(run())
    assert result.ok
    assert result.attempts == 2
    assert [h.size for h in headers] == [13, 22]
    assert headers[1].checksum == digest_bytes(b"second, longer version")


def test_missing_source_file(tmp_path):
    async def run():
        link = SenderLink(Destination("127.0.0.1", _free_port()), max_connect_attempts=1)
        with pytest.raises(SourceFileError):
            await link.send(tmp_path / "nope.txt", "nope.txt")
        return link.connections

    assert asyncio.run(run()) == 0


def test_name_too_long_is_not_sent(tmp_path):
    src = tmp_path / "f.txt"
    src.write_bytes(b"x")

    async def run():
        link = SenderLink(Destination("127.0.0.1", _free_port()), max_connect_attempts=1)
        with pytest.raises(FrameError):
            await link.send(src, "n" * 70_000)

    asyncio.run(run())


def test_gives_up_after_max_connect_attempts(tmp_path):
    src = tmp_path / "f.txt"
    src.write_bytes(b"x")

    async def run():
        link = SenderLink(Destination("127.0.0.1", _free_port()), backoff_s=0.01, max_connect_attempts=3)
        with pytest.raises(DestinationUnreachableError) as info:
            await link.send(src, "f.txt")
        return info.value

    error = asyncio.run(run())
    assert error.port is not None
    assert "3 connection attempts" in str(error)


def test_silent_receiver_times_out_and_reconnects(tmp_path):
    src = tmp_path / "f.txt"
    src.write_bytes(b"nobody answers")
    frames = []

    async def handle(reader, writer):
        header = await read_header(reader)
        await reader.readexactly(header.size)
        frames.append(header.name)
        # hold the connection open without replying
        await reader.read()
        writer.close()

    async def run():
        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        link = SenderLink(Destination("127.0.0.1", port), io_timeout_s=0.2)
        try:
            with pytest.raises(LinkError):
                await asyncio.wait_for(link.send(src, "f.txt"), timeout=5)
            return link.connections, link.connected
        finally:
            await link.close()
            server.close()
            await server.wait_closed()

    connections, connected = asyncio.run(run())
    assert connections == 2
    assert not connected
    assert frames == ["f.txt", "f.txt"]
