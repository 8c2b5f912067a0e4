"""Streaming RIFF/WAVE writer.

The header is written up front with zeroed size fields so an interrupted capture
still leaves a parseable (empty) file; ``close`` patches the two size fields once
the payload length is known.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from services.common.structured_logging import get_logger

from .errors import WriteError


HEADER_SIZE = 44
RIFF_SIZE_OFFSET = 4
DATA_SIZE_OFFSET = 40
PCM_FORMAT = 1
_MAX_PAYLOAD = 0xFFFFFFFF - (HEADER_SIZE - 8)


@dataclass(frozen=True, slots=True)
class ContainerHeader:
    """Parsed view of a 44-byte canonical WAV header."""

    riff_size: int
    format_code: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_size: int


def build_header(
    channels: int, sample_rate: int, bits_per_sample: int, data_size: int = 0
) -> bytes:
    """Encode the canonical 44-byte PCM WAV header (little-endian)."""
    sample_width = bits_per_sample // 8
    byte_rate = sample_rate * channels * sample_width
    block_align = channels * sample_width

    riff_chunk = struct.pack("<4sI4s", b"RIFF", HEADER_SIZE - 8 + data_size, b"WAVE")
    fmt_chunk = struct.pack(
        "<4sIHHIIHH",
        b"fmt ",
        16,
        PCM_FORMAT,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
    )
    return riff_chunk + fmt_chunk + struct.pack("<4sI", b"data", data_size)


def read_header(path: str | Path) -> ContainerHeader:
    """Parse the header of a file produced by ``ContainerWriter``."""
    with open(path, "rb") as handle:
        raw = handle.read(HEADER_SIZE)
    if len(raw) < HEADER_SIZE:
        raise ValueError(f"{path} is shorter than a WAV header")
    riff_id, riff_size, wave_id = struct.unpack_from("<4sI4s", raw, 0)
    (
        fmt_id,
        fmt_size,
        format_code,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
    ) = struct.unpack_from("<4sIHHIIHH", raw, 12)
    data_id, data_size = struct.unpack_from("<4sI", raw, 36)
    if (riff_id, wave_id, fmt_id, data_id) != (b"RIFF", b"WAVE", b"fmt ", b"data"):
        raise ValueError(f"{path} is not a canonical PCM WAV file")
    if fmt_size != 16:
        raise ValueError(f"{path} has an unexpected fmt chunk size {fmt_size}")
    return ContainerHeader(
        riff_size=riff_size,
        format_code=format_code,
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bits_per_sample=bits_per_sample,
        data_size=data_size,
    )


class ContainerWriter:
    """Append-only WAV writer with deferred size fields."""

    def __init__(
        self,
        path: str | Path,
        channels: int,
        sample_rate: int,
        bits_per_sample: int = 16,
    ) -> None:
        if channels < 1:
            raise ValueError("channels must be >= 1")
        if sample_rate < 1:
            raise ValueError("sample_rate must be >= 1")
        if bits_per_sample not in (8, 16, 24, 32):
            raise ValueError(f"Unsupported bits_per_sample: {bits_per_sample}")
        self.path = Path(path)
        self.channels = channels
        self.sample_rate = sample_rate
        self.bits_per_sample = bits_per_sample
        self.block_align = channels * (bits_per_sample // 8)
        self.bytes_written = 0
        self._handle: BinaryIO | None = None
        self._closed = False
        self._logger = get_logger(__name__, service_name="voice_capture")

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def total_bytes(self) -> int:
        return HEADER_SIZE + self.bytes_written

    def open(self) -> ContainerWriter:
        """Create the file and write the placeholder header."""
        if self._handle is not None or self._closed:
            raise RuntimeError(f"{self.path} was already opened")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(self.path, "w+b")
            self._handle.write(
                build_header(self.channels, self.sample_rate, self.bits_per_sample)
            )
            self._handle.flush()
        except OSError as exc:
            self._release_handle()
            self._closed = True
            self._unlink()
            raise WriteError(self.path, str(exc)) from exc
        self._logger.debug(
            "container.opened",
            path=str(self.path),
            channels=self.channels,
            sample_rate=self.sample_rate,
            bits_per_sample=self.bits_per_sample,
        )
        return self

    def append(self, pcm: bytes) -> int:
        """Append raw PCM; returns the running payload size."""
        if self._handle is None:
            raise RuntimeError(f"{self.path} is not open")
        if not pcm:
            return self.bytes_written
        if len(pcm) % self.block_align:
            raise ValueError(
                f"PCM chunk of {len(pcm)} bytes is not a multiple of block align {self.block_align}"
            )
        if self.bytes_written + len(pcm) > _MAX_PAYLOAD:
            raise WriteError(self.path, "payload would overflow 32-bit WAV size fields")
        try:
            self._handle.write(pcm)
        except OSError as exc:
            raise WriteError(self.path, str(exc)) from exc
        self.bytes_written += len(pcm)
        return self.bytes_written

    def close(self) -> None:
        """Patch both size fields and release the handle. Idempotent."""
        if self._closed:
            return
        handle = self._handle
        self._closed = True
        if handle is None:
            return
        try:
            handle.seek(RIFF_SIZE_OFFSET)
            handle.write(struct.pack("<I", HEADER_SIZE - 8 + self.bytes_written))
            handle.seek(DATA_SIZE_OFFSET)
            handle.write(struct.pack("<I", self.bytes_written))
            handle.flush()
        except OSError as exc:
            raise WriteError(self.path, str(exc)) from exc
        finally:
            self._release_handle()
        self._logger.debug(
            "container.finalized",
            path=str(self.path),
            payload_bytes=self.bytes_written,
            total_bytes=self.total_bytes,
        )

    def discard(self) -> None:
        """Release the handle without finalizing and delete the file. Idempotent."""
        already_closed = self._closed
        self._closed = True
        self._release_handle()
        if self._unlink() and not already_closed:
            self._logger.debug("container.discarded", path=str(self.path))

    def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except OSError as exc:
            self._logger.warning(
                "container.close_failed", path=str(self.path), error=str(exc)
            )

    def _unlink(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            self._logger.warning(
                "container.delete_failed", path=str(self.path), error=str(exc)
            )
            return False
        return True

    def __enter__(self) -> ContainerWriter:
        if self._handle is None and not self._closed:
            self.open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        if exc_type is None:
            self.close()
        else:
            self.discard()


__all__ = [
    "ContainerHeader",
    "ContainerWriter",
    "DATA_SIZE_OFFSET",
    "HEADER_SIZE",
    "RIFF_SIZE_OFFSET",
    "build_header",
    "read_header",
]
