"""
The single decode loop of a run.

Walks the source's packets in container order, decodes the ones that
belong to the selected video/audio streams and publishes every decoded
frame to the broadcast channel. Any decode error is fatal and propagates
to the caller; closing the channel is the caller's job.
"""

import logging
import time
from dataclasses import dataclass

from mediafan.errors import NoDecodableStreamError
from mediafan.remuxer.broadcast import BroadcastChannel
from mediafan.remuxer.frames import Frame, MediaKind
from mediafan.remuxer.media_source import MediaSource, SelectedStream

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DistributionStats:
    packets: int = 0
    ignored_packets: int = 0
    video_frames: int = 0
    audio_frames: int = 0
    elapsed_seconds: float = 0.0

    @property
    def frames(self) -> int:
        return self.video_frames + self.audio_frames


class FrameDistributor:
    def __init__(
        self,
        source: MediaSource,
        channel: BroadcastChannel,
        video: SelectedStream | None = None,
        audio: SelectedStream | None = None,
    ) -> None:
        if video is None and audio is None:
            raise NoDecodableStreamError()
        self._source = source
        self._channel = channel
        self._video = video
        self._audio = audio
        self._by_index = {s.index: s for s in (video, audio) if s is not None}
        self.stats = DistributionStats()

    def _publish(self, frame: Frame) -> None:
        if frame.kind == MediaKind.VIDEO:
            self.stats.video_frames += 1
        else:
            self.stats.audio_frames += 1
        self._channel.publish(frame)

    def run(self) -> DistributionStats:
        """Decode and publish until the packet sequence is exhausted."""
        start = time.monotonic()
        stats = self.stats

        for stream_index, packet in self._source.packets():
            stats.packets += 1
            selected = self._by_index.get(stream_index)
            if selected is None:
                stats.ignored_packets += 1
                continue
            for frame in self._source.decode(selected, packet):
                self._publish(frame)

        # Drain frames still buffered inside the decoders
        for selected in (self._video, self._audio):
            if selected is None:
                continue
            for frame in self._source.decode(selected, None):
                self._publish(frame)

        stats.elapsed_seconds = time.monotonic() - start
        logger.info(
            "[distributor] Done: %d packets (%d ignored), %d video + %d audio frames in %.2fs",
            stats.packets,
            stats.ignored_packets,
            stats.video_frames,
            stats.audio_frames,
            stats.elapsed_seconds,
        )
        return stats
