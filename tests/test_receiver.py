from __future__ import annotations

import asyncio
import os

import pytest

from filerep.constants import ACK, NACK
from filerep.errors import PathSafetyError
from filerep.frame import encode
from filerep.receiver import ReceiverServer, SessionState, resolve_destination


def _frame(name: str, payload: bytes, corrupt: bool = False) -> bytes:
    header, payload = encode(name, payload)
    if corrupt:
        damaged = bytearray(payload)
        damaged[len(damaged) // 2] ^= 0x01
        payload = bytes(damaged)
    return header + payload


async def _exchange(port: int, frames: list[bytes]) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    replies = b""
    for raw in frames:
        writer.write(raw)
        await writer.drain()
        replies += await reader.readexactly(1)
    writer.close()
    await writer.wait_closed()
    return replies


def _send_frames(dest, frames: list[bytes], **server_kwargs) -> bytes:
    async def run():
        async with ReceiverServer(dest, host="127.0.0.1", port=0, **server_kwargs) as server:
            return await _exchange(server.port, frames)

    return asyncio.run(run())


def _leftovers(root) -> list[str]:
    return [str(p) for p in root.rglob("*.part")]


def test_roundtrip_empty_and_multi_chunk(tmp_path):
    dest = tmp_path / "dest"
    big = os.urandom(3 * 1024 * 1024 + 17)
    replies = _send_frames(dest, [_frame("empty.bin", b""), _frame("sub/dir/big.bin", big)])

    assert replies == bytes([ACK, ACK])
    assert (dest / "empty.bin").read_bytes() == b""
    assert (dest / "sub" / "dir" / "big.bin").read_bytes() == big
    assert _leftovers(dest) == []


def test_corrupted_payload_is_rejected_and_session_continues(tmp_path):
    dest = tmp_path / "dest"
    replies = _send_frames(
        dest,
        [_frame("bad.bin", b"0123456789", corrupt=True), _frame("good.bin", b"fine")],
    )

    assert replies == bytes([NACK, ACK])
    assert not (dest / "bad.bin").exists()
    assert (dest / "good.bin").read_bytes() == b"fine"
    assert _leftovers(dest) == []


@pytest.mark.parametrize(
    "name",
    ["../evil.txt", "/tmp/evil.txt", "a/../../evil.txt", "a/\x00b", "x.part", "sub/y.part"],
)
def test_escaping_names_are_rejected(tmp_path, name):
    dest = tmp_path / "dest"
    replies = _send_frames(dest, [_frame(name, b"payload"), _frame("after.txt", b"ok")])

    assert replies == bytes([NACK, ACK])
    assert not (tmp_path / "evil.txt").exists()
    assert sorted(p.name for p in dest.rglob("*")) == ["after.txt"]


def test_republish_overwrites_without_leftovers(tmp_path):
    dest = tmp_path / "dest"
    assert _send_frames(dest, [_frame("same.txt", b"v1"), _frame("same.txt", b"v1")]) == bytes([ACK, ACK])
    assert (dest / "same.txt").read_bytes() == b"v1"

    assert _send_frames(dest, [_frame("same.txt", b"version two")]) == bytes([ACK])
    assert (dest / "same.txt").read_bytes() == b"version two"
    assert sorted(p.name for p in dest.iterdir()) == ["same.txt"]


def test_stale_part_file_is_truncated(tmp_path):
    dest = tmp_path / "dest"
    dest.mkdir()
    (dest / "f.txt.part").write_bytes(b"garbage from an earlier attempt" * 100)

    assert _send_frames(dest, [_frame("f.txt", b"short")]) == bytes([ACK])
    assert (dest / "f.txt").read_bytes() == b"short"
    assert _leftovers(dest) == []


def test_filesystem_error_is_per_file(tmp_path):
    dest = tmp_path / "dest"
    dest.mkdir()
    (dest / "blocker").write_bytes(b"a file, not a directory")

    replies = _send_frames(dest, [_frame("blocker/inner.txt", b"x"), _frame("next.txt", b"y")])

    assert replies == bytes([NACK, ACK])
    assert (dest / "next.txt").read_bytes() == b"y"


def test_truncated_payload_leaves_nothing(tmp_path):
    dest = tmp_path / "dest"
    raw = _frame("cut.bin", b"z" * 10_000)

    async def run():
        closed = asyncio.Event()

        def observer(previous, new):
            if new is SessionState.CLOSED:
                closed.set()

        async with ReceiverServer(dest, host="127.0.0.1", port=0, observer=observer) as server:
            _, writer = await asyncio.open_connection("127.0.0.1", server.port)
            writer.write(raw[: len(raw) - 5000])
            await writer.drain()
            writer.close()
            await writer.wait_closed()
            await asyncio.wait_for(closed.wait(), timeout=5)

    asyncio.run(run())
    assert not (dest / "cut.bin").exists()
    assert _leftovers(dest) == []


def test_state_transitions_and_publish_point(tmp_path):
    dest = tmp_path / "dest"
    final = dest / "obs.bin"
    seen = []

    def observer(previous, new):
        seen.append((new, final.exists()))

    assert _send_frames(dest, [_frame("obs.bin", b"abc" * 1000)], observer=observer) == bytes([ACK])

    states = [state for state, _ in seen]
    assert states == [
        SessionState.RECEIVE_PAYLOAD,
        SessionState.VERIFY,
        SessionState.PUBLISH,
        SessionState.AWAIT_HEADER,
        SessionState.CLOSED,
    ]
    # nothing under the final name until the rename in PUBLISH
    assert [exists for state, exists in seen if state is not SessionState.AWAIT_HEADER and state is not SessionState.CLOSED] == [
        False,
        False,
        False,
    ]


def test_reader_never_sees_partial_file(tmp_path):
    dest = tmp_path / "dest"
    payload = os.urandom(4 * 1024 * 1024)
    final = dest / "atomic.bin"
    sizes = set()

    async def run():
        async with ReceiverServer(dest, host="127.0.0.1", port=0, chunk_size=64 * 1024) as server:
            done = asyncio.Event()

            async def poll():
                while not done.is_set():
                    try:
                        sizes.add(final.stat().st_size)
                    except FileNotFoundError:
                        pass
                    await asyncio.sleep(0)

            poller = asyncio.create_task(poll())
            replies = await _exchange(server.port, [_frame("atomic.bin", payload)])
            done.set()
            await poller
            return replies

    assert asyncio.run(run()) == bytes([ACK])
    assert sizes <= {len(payload)}
    assert final.read_bytes() == payload


def test_close_ends_live_sessions(tmp_path):
    async def run():
        server = ReceiverServer(tmp_path / "dest", host="127.0.0.1", port=0)
        await server.start()
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        writer.write(_frame("one.txt", b"1"))
        await writer.drain()
        assert await reader.readexactly(1) == bytes([ACK])

        await server.close()
        assert await asyncio.wait_for(reader.read(), timeout=5) == b""
        writer.close()

    asyncio.run(run())


def test_resolve_destination(tmp_path):
    assert resolve_destination(tmp_path, "a/b/c.txt") == tmp_path / "a" / "b" / "c.txt"
    assert resolve_destination(tmp_path, "./a.txt") == tmp_path / "a.txt"
    for bad in ["", ".", "..", "../x", "/etc/passwd", "a/../../x", "a.part", "d/b.txt.part"]:
        with pytest.raises(PathSafetyError):
            resolve_destination(tmp_path, bad)


def test_resolve_destination_rejects_symlink_escape(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (root / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(PathSafetyError):
        resolve_destination(root, "link/file.txt")


def test_symlink_loop_is_rejected_per_file(tmp_path):
    dest = tmp_path / "dest"
    dest.mkdir()
    (dest / "loop").symlink_to(dest / "loop")

    replies = _send_frames(dest, [_frame("loop/x.txt", b"payload"), _frame("after.txt", b"ok")])

    assert replies == bytes([NACK, ACK])
    assert (dest / "after.txt").read_bytes() == b"ok"
    assert sorted(os.listdir(dest)) == ["after.txt", "loop"]
