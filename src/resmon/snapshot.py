"""Raw process samples and the collector snapshot codec.

A snapshot travels from the collector as a length-prefixed frame:

    [length: size_t, little-endian][length bytes of MessagePack]

The MessagePack body is an array of records. Records are written as maps
keyed by field name; array-form records (fields in declaration order) are
also accepted so collectors that serialize positionally can be read.
"""

import ctypes
from dataclasses import dataclass, field, fields

import msgpack

# Width of the length prefix: one machine word
LENGTH_PREFIX_SIZE = ctypes.sizeof(ctypes.c_size_t)


class SnapshotDecodeError(ValueError):
    """Raised when a snapshot payload cannot be decoded into samples."""


@dataclass(frozen=True)
class GpuUsageStats:
    """Per-GPU usage counters for one process.

    When ``nvidia`` is set, gfx/enc/dec are vendor-native percentages
    (0-100). Otherwise they are cumulative engine busy times in nanoseconds.
    ``mem`` is always an instantaneous byte count.
    """

    gfx: int = 0
    mem: int = 0
    enc: int = 0
    dec: int = 0
    nvidia: bool = False

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "gfx": self.gfx,
            "mem": self.mem,
            "enc": self.enc,
            "dec": self.dec,
            "nvidia": self.nvidia,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GpuUsageStats":
        """Deserialize from a dictionary."""
        return cls(
            gfx=data["gfx"],
            mem=data["mem"],
            enc=data["enc"],
            dec=data["dec"],
            nvidia=data["nvidia"],
        )


@dataclass(frozen=True)
class RawProcessSample:
    """One process's kernel counters at a point in time.

    Produced by the collector only. CPU times and ``starttime`` are in clock
    ticks; ``timestamp`` is milliseconds since boot.
    """

    # ─────────────────────────────────────────────────────────────
    # Identity
    # ─────────────────────────────────────────────────────────────
    pid: int
    parent_pid: int
    uid: int
    comm: str
    commandline: str
    cgroup: str | None = None

    # ─────────────────────────────────────────────────────────────
    # CPU / memory
    # ─────────────────────────────────────────────────────────────
    user_cpu_time: int = 0  # Cumulative ticks
    system_cpu_time: int = 0  # Cumulative ticks
    memory_usage: int = 0  # Resident bytes

    # ─────────────────────────────────────────────────────────────
    # Disk I/O (None when the kernel does not expose it for this process)
    # ─────────────────────────────────────────────────────────────
    read_bytes: int | None = None
    write_bytes: int | None = None

    # ─────────────────────────────────────────────────────────────
    # GPU, keyed by PCI slot ("0000:03:00.0")
    # ─────────────────────────────────────────────────────────────
    gpu_usage_stats: dict[str, GpuUsageStats] = field(default_factory=dict)

    # ─────────────────────────────────────────────────────────────
    # Timing
    # ─────────────────────────────────────────────────────────────
    starttime: int = 0  # Ticks since boot
    timestamp: int = 0  # Milliseconds since boot

    @property
    def cpu_time(self) -> int:
        """Total cumulative CPU ticks (user + system)."""
        return self.user_cpu_time + self.system_cpu_time

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "pid": self.pid,
            "parent_pid": self.parent_pid,
            "uid": self.uid,
            "comm": self.comm,
            "commandline": self.commandline,
            "cgroup": self.cgroup,
            "user_cpu_time": self.user_cpu_time,
            "system_cpu_time": self.system_cpu_time,
            "memory_usage": self.memory_usage,
            "read_bytes": self.read_bytes,
            "write_bytes": self.write_bytes,
            "gpu_usage_stats": {
                slot: stats.to_dict() for slot, stats in self.gpu_usage_stats.items()
            },
            "starttime": self.starttime,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RawProcessSample":
        """Deserialize from a dictionary."""
        return cls(
            pid=data["pid"],
            parent_pid=data["parent_pid"],
            uid=data["uid"],
            comm=data["comm"],
            commandline=data["commandline"],
            cgroup=data.get("cgroup"),
            user_cpu_time=data["user_cpu_time"],
            system_cpu_time=data["system_cpu_time"],
            memory_usage=data["memory_usage"],
            read_bytes=data.get("read_bytes"),
            write_bytes=data.get("write_bytes"),
            gpu_usage_stats={
                str(slot): GpuUsageStats.from_dict(stats)
                for slot, stats in (data.get("gpu_usage_stats") or {}).items()
            },
            starttime=data["starttime"],
            timestamp=data["timestamp"],
        )


_SAMPLE_FIELDS = tuple(f.name for f in fields(RawProcessSample))
_GPU_FIELDS = tuple(f.name for f in fields(GpuUsageStats))


def _positional(record: list, names: tuple[str, ...]) -> dict:
    if len(record) != len(names):
        raise SnapshotDecodeError(f"expected {len(names)} fields, got {len(record)}")
    return dict(zip(names, record))


def _normalize_record(record: object) -> dict:
    """Turn a map- or array-form record into a field dict."""
    if isinstance(record, list):
        data = _positional(record, _SAMPLE_FIELDS)
    elif isinstance(record, dict):
        data = dict(record)
    else:
        raise SnapshotDecodeError(f"record must be a map or array, got {type(record).__name__}")

    gpus = data.get("gpu_usage_stats") or {}
    if not isinstance(gpus, dict):
        raise SnapshotDecodeError("gpu_usage_stats must be a map")
    data["gpu_usage_stats"] = {
        slot: _positional(stats, _GPU_FIELDS) if isinstance(stats, list) else stats
        for slot, stats in gpus.items()
    }
    return data


def encode_snapshot(samples: list[RawProcessSample]) -> bytes:
    """Encode samples as a MessagePack payload (without length prefix)."""
    return msgpack.packb([s.to_dict() for s in samples], use_bin_type=True)


def decode_snapshot(payload: bytes) -> list[RawProcessSample]:
    """Decode a MessagePack payload into samples.

    Raises:
        SnapshotDecodeError: If the payload is not a valid snapshot.
    """
    try:
        records = msgpack.unpackb(payload, raw=False, strict_map_key=False)
    except (msgpack.exceptions.UnpackException, ValueError, TypeError) as e:
        raise SnapshotDecodeError(f"invalid MessagePack payload: {e}") from e

    if not isinstance(records, list):
        raise SnapshotDecodeError(f"snapshot must be an array, got {type(records).__name__}")

    try:
        return [RawProcessSample.from_dict(_normalize_record(r)) for r in records]
    except (KeyError, TypeError, AttributeError) as e:
        raise SnapshotDecodeError(f"malformed process record: {e!r}") from e


def encode_length(length: int) -> bytes:
    """Encode a payload length as a machine-word little-endian prefix."""
    return length.to_bytes(LENGTH_PREFIX_SIZE, "little")


def decode_length(prefix: bytes) -> int:
    """Decode a machine-word little-endian length prefix."""
    if len(prefix) != LENGTH_PREFIX_SIZE:
        raise SnapshotDecodeError(
            f"length prefix must be {LENGTH_PREFIX_SIZE} bytes, got {len(prefix)}"
        )
    return int.from_bytes(prefix, "little")


def frame_snapshot(samples: list[RawProcessSample]) -> bytes:
    """Encode samples as a complete wire frame (prefix + payload)."""
    payload = encode_snapshot(samples)
    return encode_length(len(payload)) + payload
