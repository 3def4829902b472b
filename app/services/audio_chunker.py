"""
Re-segments arbitrary browser audio blocks into upstream-sized frames
"""

from typing import List, Optional
from app.config import settings, ChunkingMode
from app.core.logging import get_logger
from app.models.transcript import AudioFrame, BYTES_PER_SAMPLE

logger = get_logger(__name__)


class AudioChunker:
    """
    Accumulates raw s16le samples and emits fixed-size AudioFrames.

    In rebuffer mode every emitted frame holds exactly ``frame_samples``
    samples; the remainder stays queued until more audio arrives. In
    passthrough mode each pushed block becomes one frame, trimmed to whole
    samples.
    """

    def __init__(
        self,
        sample_rate: Optional[int] = None,
        frames_per_second: Optional[int] = None,
        mode: Optional[ChunkingMode] = None,
    ):
        self.sample_rate = sample_rate or settings.audio_sample_rate
        fps = frames_per_second or settings.audio_frames_per_second
        if fps <= 0 or self.sample_rate % fps:
            raise ValueError(
                f"sample_rate {self.sample_rate} is not divisible into {fps} frames per second"
            )
        self.frame_samples = self.sample_rate // fps
        self.mode = mode or settings.audio_chunking_mode
        self._buffer = bytearray()
        self._sequence = 0

    @property
    def frame_bytes(self) -> int:
        return self.frame_samples * BYTES_PER_SAMPLE

    @property
    def buffered_samples(self) -> int:
        return len(self._buffer) // BYTES_PER_SAMPLE

    def push(self, block: bytes) -> List[AudioFrame]:
        """Append a block and return every complete frame now available."""
        if not block:
            return []
        self._buffer.extend(block)

        if self.mode == ChunkingMode.PASSTHROUGH:
            usable = len(self._buffer) - len(self._buffer) % BYTES_PER_SAMPLE
            if not usable:
                return []
            frame = self._emit(bytes(self._buffer[:usable]))
            del self._buffer[:usable]
            return [frame]

        frames = []
        while len(self._buffer) >= self.frame_bytes:
            frames.append(self._emit(bytes(self._buffer[:self.frame_bytes])))
            del self._buffer[:self.frame_bytes]
        return frames

    def flush(self, pad: bool = False) -> Optional[AudioFrame]:
        """
        Drain the trailing partial frame.

        With ``pad`` the remainder is zero-padded to a full frame and returned;
        otherwise it is discarded. The buffer is empty afterwards either way.
        """
        remainder = self.buffered_samples
        if not remainder:
            self.reset()
            return None
        if not pad:
            logger.debug(f"Discarding trailing partial frame of {remainder} samples")
            self.reset()
            return None

        usable = remainder * BYTES_PER_SAMPLE
        data = bytes(self._buffer[:usable])
        if self.mode == ChunkingMode.REBUFFER:
            data = data + b"\x00" * (self.frame_bytes - usable)
        self.reset()
        return self._emit(data)

    def reset(self):
        """Release all buffered samples."""
        self._buffer.clear()

    def _emit(self, data: bytes) -> AudioFrame:
        frame = AudioFrame(sequence=self._sequence, data=data, sample_rate=self.sample_rate)
        self._sequence += 1
        return frame
