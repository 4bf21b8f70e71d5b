"""
Pytest configuration and in-memory stand-ins for the codec layer.

Optional settings (e.g. MEDIAFAN log level overrides) are loaded from the
project's .env file, the same file the application reads.
"""

import threading
import time
from fractions import Fraction
from pathlib import Path

import pytest
from dotenv import load_dotenv

from mediafan.errors import CodecError
from mediafan.remuxer.frames import AudioFrame, MediaKind, VideoFrame
from mediafan.remuxer.media_source import MediaInfo, SelectedStream

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

VIDEO_INDEX = 0
AUDIO_INDEX = 1
DATA_INDEX = 2


def make_video_frame(pts: int, width: int = 64, height: int = 48) -> VideoFrame:
    return VideoFrame(
        stream_index=VIDEO_INDEX,
        pts=pts,
        time_base=Fraction(1, 25),
        width=width,
        height=height,
        pixel_format="yuv420p",
    )


def make_audio_frame(pts: int) -> AudioFrame:
    return AudioFrame(
        stream_index=AUDIO_INDEX,
        pts=pts,
        time_base=Fraction(1, 48000),
        sample_rate=48000,
        channels=2,
        samples=1024,
    )


class DummyMediaSource:
    """
    Media source replaying a fixed list of ``(stream_index, pts)`` packets.

    Each packet of a selected stream decodes to exactly one frame carrying
    the packet's pts. ``fail_at`` makes decoding the packet with that pts fail,
    ``flush`` maps a stream index to pts values emitted when its decoder is
    flushed, ``packet_delay`` sleeps before yielding each packet.
    """

    def __init__(
        self,
        packets,
        video: bool = True,
        audio: bool = False,
        fail_at: int | None = None,
        flush: dict | None = None,
        packet_delay: float = 0.0,
    ) -> None:
        self._packets = list(packets)
        self._video = SelectedStream(index=VIDEO_INDEX, kind=MediaKind.VIDEO, decoder="video") if video else None
        self._audio = SelectedStream(index=AUDIO_INDEX, kind=MediaKind.AUDIO, decoder="audio") if audio else None
        self._fail_at = fail_at
        self._flush = flush or {}
        self._packet_delay = packet_delay
        self.decoded: list[int] = []
        self.closed = False

    def select_best(self, kind: MediaKind):
        return self._video if kind == MediaKind.VIDEO else self._audio

    def packets(self):
        for stream_index, pts in self._packets:
            if self._packet_delay:
                time.sleep(self._packet_delay)
            yield stream_index, pts

    def decode(self, stream: SelectedStream, packet):
        if packet is None:
            pts_values = self._flush.get(stream.index, [])
        else:
            if packet == self._fail_at:
                raise CodecError(f"Decode error on stream #{stream.index}: invalid data at pts {packet}")
            pts_values = [packet]
        self.decoded.extend(pts_values)
        if stream.kind == MediaKind.VIDEO:
            return [make_video_frame(pts) for pts in pts_values]
        return [make_audio_frame(pts) for pts in pts_values]

    def media_info(self) -> MediaInfo:
        return MediaInfo()

    def close(self) -> None:
        self.closed = True


class RecordingWriter:
    """Writer that records what it is given instead of encoding."""

    def __init__(self, task=None, kinds=(MediaKind.VIDEO, MediaKind.AUDIO), write_delay: float = 0.0, fail_at=None):
        self.task = task
        self.kinds = set(kinds)
        self.write_delay = write_delay
        self.fail_at = fail_at
        self.frames = []
        self.finalized = 0
        self.thread_names = set()

    def accepts(self, kind: MediaKind) -> bool:
        return kind in self.kinds

    def _write(self, frame) -> None:
        self.thread_names.add(threading.current_thread().name)
        if self.write_delay:
            time.sleep(self.write_delay)
        if self.fail_at is not None and frame.pts == self.fail_at:
            raise CodecError(f"Encode error at pts {frame.pts}")
        self.frames.append(frame)

    def write_video(self, frame) -> None:
        self._write(frame)

    def write_audio(self, frame) -> None:
        self._write(frame)

    def finalize(self) -> None:
        self.finalized += 1

    @property
    def pts(self) -> list:
        return [(frame.kind, frame.pts) for frame in self.frames]


class WriterRegistry:
    """Writer factory handing out RecordingWriters, optionally customized per output file name."""

    def __init__(self, **overrides) -> None:
        self.overrides = overrides
        self.writers: dict[str, RecordingWriter] = {}
        self.fail_open: set[str] = set()

    def __call__(self, task, media_info) -> RecordingWriter:
        name = task.output_file.name
        if name in self.fail_open:
            raise CodecError(f"Unable to open output {task.output_file}")
        writer = RecordingWriter(task, **self.overrides.get(name, {}))
        self.writers[name] = writer
        return writer


@pytest.fixture
def writers() -> WriterRegistry:
    return WriterRegistry()
