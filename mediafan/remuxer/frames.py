"""
Typed frames handed from the distributor to the encode workers.

A frame is produced once by the decode loop and shared, read-only, by
every worker that receives it. The wrappers are frozen; workers must not
mutate the underlying codec frame either. Anything that needs its own
timestamps or pixel format works on a reformatted or copied frame.
"""

from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from typing import Union


class MediaKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"


def _to_seconds(pts: int | None, time_base: Fraction | None) -> float:
    if pts is None or not time_base:
        return 0.0
    return float(pts * time_base)


@dataclass(frozen=True, slots=True)
class VideoFrame:
    """A decoded video frame."""

    stream_index: int
    pts: int | None
    time_base: Fraction | None
    width: int
    height: int
    pixel_format: str
    # av.VideoFrame, or any stand-in object in tests
    data: object = None

    @property
    def kind(self) -> MediaKind:
        return MediaKind.VIDEO

    @property
    def pts_seconds(self) -> float:
        return _to_seconds(self.pts, self.time_base)

    @classmethod
    def from_av(cls, frame, stream_index: int) -> "VideoFrame":
        return cls(
            stream_index=stream_index,
            pts=int(frame.pts) if frame.pts is not None else None,
            time_base=frame.time_base,
            width=frame.width,
            height=frame.height,
            pixel_format=frame.format.name,
            data=frame,
        )


@dataclass(frozen=True, slots=True)
class AudioFrame:
    """A decoded audio frame."""

    stream_index: int
    pts: int | None
    time_base: Fraction | None
    sample_rate: int
    channels: int
    samples: int
    data: object = None

    @property
    def kind(self) -> MediaKind:
        return MediaKind.AUDIO

    @property
    def pts_seconds(self) -> float:
        return _to_seconds(self.pts, self.time_base)

    @classmethod
    def from_av(cls, frame, stream_index: int) -> "AudioFrame":
        return cls(
            stream_index=stream_index,
            pts=int(frame.pts) if frame.pts is not None else None,
            time_base=frame.time_base,
            sample_rate=frame.sample_rate,
            channels=len(frame.layout.channels),
            samples=frame.samples,
            data=frame,
        )


Frame = Union[VideoFrame, AudioFrame]
