"""Snapshot channel to the privileged collector process."""

from __future__ import annotations

import asyncio
import subprocess
import threading
from typing import BinaryIO, Callable

import structlog

from resmon.host import HelperLauncher
from resmon.snapshot import (
    LENGTH_PREFIX_SIZE,
    RawProcessSample,
    SnapshotDecodeError,
    decode_length,
    decode_snapshot,
)

log = structlog.get_logger()

# Single byte that asks the collector for one snapshot
REQUEST_BYTE = b"\n"

DISCARD_CHUNK_SIZE = 64 * 1024

StreamFactory = Callable[[], tuple[BinaryIO, BinaryIO]]


class CollectorError(Exception):
    """A snapshot could not be obtained from the collector."""


class ChannelFailure(CollectorError):
    """The byte stream broke: spawn failure, broken pipe, or short read."""


class DecodeFailure(CollectorError):
    """The collector answered, but the payload is not a valid snapshot."""


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    """Read exactly size bytes, looping over partial reads.

    Raises:
        ChannelFailure: If the stream ends before size bytes arrive.
    """
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            got = size - remaining
            raise ChannelFailure(f"short read on {what}: got {got} of {size} bytes")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _discard_exact(stream: BinaryIO, size: int, what: str) -> None:
    """Read and drop exactly size bytes in bounded chunks.

    Raises:
        ChannelFailure: If the stream ends before size bytes arrive.
    """
    remaining = size
    while remaining > 0:
        chunk = stream.read(min(remaining, DISCARD_CHUNK_SIZE))
        if not chunk:
            raise ChannelFailure(f"short read on {what}: {remaining} of {size} bytes missing")
        remaining -= len(chunk)


class SnapshotChannel:
    """Owns the duplex stream to the collector and serializes requests.

    The collector is spawned lazily on the first request and kept for the
    life of the channel. At most one request/response exchange is in flight;
    concurrent callers block on the lock. A caller that gives up waiting must
    not close the channel, since the collector's reply would still be in the
    pipe and desynchronize the next request.
    """

    def __init__(
        self,
        launcher: HelperLauncher | None = None,
        *,
        max_payload_bytes: int = 256 * 1024 * 1024,
        stream_factory: StreamFactory | None = None,
    ):
        if launcher is None and stream_factory is None:
            raise ValueError("SnapshotChannel needs a launcher or a stream_factory")
        self._launcher = launcher
        self._stream_factory = stream_factory
        self._max_payload_bytes = max_payload_bytes
        self._lock = threading.Lock()
        self._proc: subprocess.Popen | None = None
        self._stdin: BinaryIO | None = None
        self._stdout: BinaryIO | None = None

    @property
    def connected(self) -> bool:
        """Whether the stream pair has been opened."""
        return self._stdin is not None and self._stdout is not None

    def _spawn(self) -> tuple[BinaryIO, BinaryIO]:
        assert self._launcher is not None
        argv = self._launcher.collector_argv()
        log.debug("collector_spawning", argv=argv, sandboxed=self._launcher.sandboxed)
        try:
            self._proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise ChannelFailure(f"failed to spawn collector {argv[0]!r}: {e}") from e
        log.info("collector_spawned", pid=self._proc.pid, path=self._launcher.collector_path)
        assert self._proc.stdin is not None and self._proc.stdout is not None
        return self._proc.stdin, self._proc.stdout

    def _ensure_open(self) -> tuple[BinaryIO, BinaryIO]:
        if self._stdin is None or self._stdout is None:
            if self._stream_factory is not None:
                self._stdin, self._stdout = self._stream_factory()
            else:
                self._stdin, self._stdout = self._spawn()
        return self._stdin, self._stdout

    def request_snapshot(self) -> list[RawProcessSample]:
        """Fetch one full-system snapshot (blocking).

        Raises:
            ChannelFailure: Spawn failure, broken pipe, or short read.
            DecodeFailure: Oversized or malformed payload.
        """
        with self._lock:
            stdin, stdout = self._ensure_open()

            try:
                stdin.write(REQUEST_BYTE)
                stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                raise ChannelFailure(f"failed to send snapshot request: {e}") from e

            try:
                prefix = _read_exact(stdout, LENGTH_PREFIX_SIZE, "length prefix")
                length = decode_length(prefix)
                if length > self._max_payload_bytes:
                    # Drain the frame so the next request starts on a prefix
                    _discard_exact(stdout, length, "oversized snapshot payload")
                    log.warning("snapshot_discarded", bytes=length, limit=self._max_payload_bytes)
                    raise DecodeFailure(
                        f"snapshot of {length} bytes exceeds limit of {self._max_payload_bytes}"
                    )
                payload = _read_exact(stdout, length, "snapshot payload")
            except SnapshotDecodeError as e:
                raise DecodeFailure(str(e)) from e
            except (OSError, ValueError) as e:
                raise ChannelFailure(f"failed to read snapshot: {e}") from e

        try:
            samples = decode_snapshot(payload)
        except SnapshotDecodeError as e:
            raise DecodeFailure(f"failed to decode snapshot of {length} bytes: {e}") from e

        log.debug("snapshot_received", bytes=length, processes=len(samples))
        return samples

    async def fetch(self) -> list[RawProcessSample]:
        """Run request_snapshot in the default executor (the exchange blocks)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.request_snapshot)

    def close(self) -> None:
        """Close the streams and stop the collector if this channel spawned it."""
        with self._lock:
            for stream in (self._stdin, self._stdout):
                if stream is not None:
                    try:
                        stream.close()
                    except OSError:
                        pass
            self._stdin = None
            self._stdout = None

            if self._proc is not None:
                self._proc.terminate()
                try:
                    self._proc.wait(timeout=5.0)
                except subprocess.TimeoutExpired:
                    self._proc.kill()
                    self._proc.wait()
                log.info("collector_stopped", pid=self._proc.pid)
                self._proc = None

    def __enter__(self) -> "SnapshotChannel":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
