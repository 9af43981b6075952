"""PCM16 framing helpers."""

from __future__ import annotations

from collections.abc import Iterator


def frame_size_bytes(sample_rate: int, frame_ms: int) -> int:
    """Bytes in one PCM16 mono frame of *frame_ms* milliseconds."""
    return sample_rate * frame_ms // 1000 * 2


def slice_frames(buffer: bytearray, frame_bytes: int) -> Iterator[bytes]:
    """Pop complete frames off the front of *buffer*, leaving the remainder."""
    while len(buffer) >= frame_bytes:
        chunk = bytes(buffer[:frame_bytes])
        del buffer[:frame_bytes]
        yield chunk


def pad_frame(chunk: bytes, frame_bytes: int) -> bytes:
    """Right-pad a trailing partial frame with silence."""
    if len(chunk) >= frame_bytes:
        return chunk
    return chunk + b"\x00" * (frame_bytes - len(chunk))
