"""PCM audio accumulation for buffered downstream delivery.

The realtime API streams a spoken segment as many small base64 deltas.
In buffered delivery mode the session collects the decoded bytes here and
flushes them as a single binary frame when the segment is done, so the
client receives one decodable unit per spoken turn.
"""

from voice_gateway.services.realtime_relay.models import CHANNELS, SAMPLE_WIDTH_BYTES


def pcm_duration_ms(num_bytes: int, sample_rate: int) -> float:
    """Playback duration of ``num_bytes`` of 16-bit mono PCM at ``sample_rate``."""
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be positive, got {sample_rate}")
    samples = num_bytes // (SAMPLE_WIDTH_BYTES * CHANNELS)
    return samples * 1000.0 / sample_rate


class AudioBuffer:
    """Append-only byte accumulator for one audio segment.

    Not synchronized; the owning session serializes access.
    """

    def __init__(self) -> None:
        self._data = bytearray()
        self._segments = 0

    def __len__(self) -> int:
        return len(self._data)

    @property
    def segments(self) -> int:
        """Number of deltas appended since the last drain."""
        return self._segments

    def append(self, data: bytes) -> None:
        if not data:
            return
        self._data.extend(data)
        self._segments += 1

    def drain(self) -> bytes:
        """Return all accumulated audio and reset the buffer."""
        data = bytes(self._data)
        self.clear()
        return data

    def clear(self) -> None:
        self._data.clear()
        self._segments = 0
