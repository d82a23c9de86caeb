from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
from pathlib import Path

from .bench import run_benchmark
from .config import Destination, ReceiverSettings, SenderSettings
from .constants import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_IO_TIMEOUT_MS,
    DEFAULT_PORT,
    DEFAULT_SETTLE_MS,
)
from .fanout import FanoutDispatcher
from .receiver import ReceiverServer
from .sender import DeliveryResult
from .watch import DirectoryWatcher, WatchLoop, relative_name

logger = logging.getLogger("filerep")


def _print(payload: object, as_json: bool) -> None:
    print(json.dumps(payload, indent=2) if as_json else payload)


def _link_options(settings: SenderSettings) -> dict:
    return {
        "backoff_s": settings.backoff_s,
        "connect_timeout_s": settings.connect_timeout_s,
        "max_connect_attempts": settings.max_connect_attempts,
        "io_timeout_s": settings.io_timeout_s,
    }


def _sender_settings(args: argparse.Namespace, watch_dir: Path) -> SenderSettings:
    return SenderSettings(
        watch_dir=watch_dir,
        destinations=tuple(args.dest),
        backoff_s=args.backoff_ms / 1000.0,
        connect_timeout_s=args.connect_timeout_ms / 1000.0 if args.connect_timeout_ms > 0 else None,
        max_connect_attempts=args.max_connect_attempts,
        io_timeout_s=args.io_timeout_ms / 1000.0 if args.io_timeout_ms > 0 else None,
        settle_s=getattr(args, "settle_ms", DEFAULT_SETTLE_MS) / 1000.0,
    )


async def _serve(settings: ReceiverSettings) -> None:
    async with ReceiverServer(settings.dest_dir, settings.host, settings.port, settings.chunk_size) as server:
        await server.serve_forever()


def cmd_recv(args: argparse.Namespace) -> int:
    settings = ReceiverSettings(
        dest_dir=Path(args.dest_dir),
        host=args.listen_host,
        port=args.listen_port,
        chunk_size=args.chunk_size,
    )
    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        logger.info("receiver stopped")
    return 0


async def _watch(settings: SenderSettings) -> None:
    watcher = DirectoryWatcher(settings.watch_dir)
    async with FanoutDispatcher(settings.destinations, **_link_options(settings)) as dispatcher:
        watcher.start()
        try:
            await WatchLoop(settings.watch_dir, watcher, dispatcher, settle_s=settings.settle_s).run()
        finally:
            watcher.stop()


def cmd_watch(args: argparse.Namespace) -> int:
    settings = _sender_settings(args, Path(args.watch_dir))
    try:
        asyncio.run(_watch(settings))
    except KeyboardInterrupt:
        logger.info("watcher stopped")
    return 0


async def _send(settings: SenderSettings, files: list[tuple[Path, str]]) -> list[DeliveryResult]:
    async with FanoutDispatcher(settings.destinations, **_link_options(settings)) as dispatcher:
        batches = [dispatcher.submit(path, name) for path, name in files]
        results: list[DeliveryResult] = []
        for futures in batches:
            results.extend(await asyncio.gather(*futures))
        return results


def cmd_send(args: argparse.Namespace) -> int:
    base = Path(args.base_dir).absolute() if args.base_dir else None
    files = []
    for raw in args.files:
        path = Path(raw).absolute()
        try:
            name = relative_name(base, path) if base is not None else path.name
        except ValueError:
            raise SystemExit(f"{raw} is not below --base-dir {args.base_dir}") from None
        files.append((path, name))

    settings = _sender_settings(args, base or Path.cwd())
    results = asyncio.run(_send(settings, files))

    payload = [
        {
            "role": "sender",
            "destination": str(r.destination),
            "name": r.name,
            "ok": r.ok,
            "bytes": r.size,
            "attempts": r.attempts,
            "seconds": r.duration_s,
            "mbps": r.throughput_mbps,
            "error": str(r.error) if r.error is not None else None,
        }
        for r in results
    ]
    _print(payload, args.json)
    return 0 if all(r.ok for r in results) else 1


def cmd_bench(args: argparse.Namespace) -> int:
    r = run_benchmark(
        size_bytes=args.size_bytes,
        corrupt_rate=args.corrupt_rate,
        delay_ms=args.delay_ms,
        chunk_size=args.chunk_size,
    )
    _print({"role": "bench", **dataclasses.asdict(r)}, args.json)
    return 0 if r.published else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="filerep", description="Replicate files to remote receivers over TCP.")
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])

    def add_sender(x: argparse.ArgumentParser, max_attempts: int | None) -> None:
        x.add_argument(
            "--dest",
            type=Destination.parse,
            action="append",
            required=True,
            help="receiver as host:port (repeat for fan-out)",
        )
        x.add_argument("--backoff-ms", type=int, default=DEFAULT_BACKOFF_MS)
        x.add_argument("--connect-timeout-ms", type=int, default=DEFAULT_CONNECT_TIMEOUT_MS, help="0 disables")
        x.add_argument(
            "--io-timeout-ms",
            type=int,
            default=DEFAULT_IO_TIMEOUT_MS,
            help="how long to wait for the receiver's reply to a file; 0 disables",
        )
        x.add_argument(
            "--max-connect-attempts",
            type=int,
            default=max_attempts,
            help="give up on a destination after this many connection attempts",
        )

    recv = sub.add_parser("recv", help="accept files and publish them under --dest-dir")
    add_common(recv)
    recv.add_argument("--listen-host", default="0.0.0.0")
    recv.add_argument("--listen-port", type=int, default=DEFAULT_PORT)
    recv.add_argument("--dest-dir", required=True)
    recv.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    recv.set_defaults(func=cmd_recv)

    watch = sub.add_parser("watch", help="replicate every file written under --watch-dir")
    add_common(watch)
    add_sender(watch, max_attempts=None)
    watch.add_argument("--watch-dir", required=True)
    watch.add_argument("--settle-ms", type=int, default=DEFAULT_SETTLE_MS)
    watch.set_defaults(func=cmd_watch)

    send = sub.add_parser("send", help="replicate the given files once")
    add_common(send)
    add_sender(send, max_attempts=10)
    send.add_argument("--base-dir", help="names are relative to this directory (default: bare file names)")
    send.add_argument("--json", action="store_true")
    send.add_argument("files", nargs="+")
    send.set_defaults(func=cmd_send)

    bench = sub.add_parser("bench", help="loopback transfer benchmark")
    add_common(bench)
    bench.add_argument("--size-bytes", type=int, default=5_000_000)
    bench.add_argument("--corrupt-rate", type=float, default=0.0)
    bench.add_argument("--delay-ms", type=int, default=0)
    bench.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
    bench.add_argument("--json", action="store_true")
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
