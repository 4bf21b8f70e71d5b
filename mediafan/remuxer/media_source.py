"""
Media source protocol and its PyAV implementation.

Decouples the frame distributor from the codec library: the distributor
only needs to pick the best audio/video streams, walk packets in
container order and decode the packets that belong to a selected stream.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

import av

from mediafan.errors import CodecError, InputNotFoundError
from mediafan.remuxer.frames import AudioFrame, Frame, MediaKind, VideoFrame

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StreamInfo:
    """What the writers and the logs need to know about a selected stream."""

    index: int
    codec_name: str
    width: int = 0
    height: int = 0
    fps: float = 0.0
    sample_rate: int = 0
    channels: int = 0


@dataclass(slots=True)
class SelectedStream:
    """A stream chosen for decoding together with the decoder bound to it."""

    index: int
    kind: MediaKind
    decoder: object
    info: StreamInfo | None = None


@dataclass(slots=True)
class MediaInfo:
    """What output writers need to know about the input."""

    video: StreamInfo | None = None
    audio: StreamInfo | None = None
    metadata: dict = field(default_factory=dict)


@runtime_checkable
class MediaSource(Protocol):
    """
    Protocol for a demuxing and decoding media source.

    Implementations must provide:
    - select_best(): best stream of a kind, with its decoder, or None
    - packets(): lazy, finite, non-restartable sequence of (stream_index, packet)
    - decode(): decode one packet (None flushes) into zero or more frames
    - media_info(): stream/metadata summary for the output writers
    """

    def select_best(self, kind: MediaKind) -> SelectedStream | None: ...

    def packets(self) -> Iterator[tuple[int, object]]: ...

    def decode(self, stream: SelectedStream, packet) -> list[Frame]: ...

    def media_info(self) -> MediaInfo: ...

    def close(self) -> None: ...


def _describe_stream(stream) -> StreamInfo:
    codec_ctx = stream.codec_context
    if stream.type == "video":
        return StreamInfo(
            index=stream.index,
            codec_name=codec_ctx.name,
            width=codec_ctx.width,
            height=codec_ctx.height,
            fps=float(stream.average_rate) if stream.average_rate else 24.0,
        )
    return StreamInfo(
        index=stream.index,
        codec_name=codec_ctx.name,
        sample_rate=codec_ctx.sample_rate or 0,
        channels=codec_ctx.channels if hasattr(codec_ctx, "channels") else len(codec_ctx.layout.channels),
    )


class PyAVMediaSource:
    """
    MediaSource backed by a local file opened with PyAV.

    Usage:
        source = PyAVMediaSource.open(path)
        video = source.select_best(MediaKind.VIDEO)
        for stream_index, packet in source.packets():
            if video and stream_index == video.index:
                frames = source.decode(video, packet)
        source.close()
    """

    def __init__(self, container, path: Path) -> None:
        self._container = container
        self._path = path
        self._selected: dict[MediaKind, SelectedStream | None] = {}
        self._packets_started = False

    @classmethod
    def open(cls, path: str | Path) -> "PyAVMediaSource":
        path = Path(path)
        if not path.exists():
            raise InputNotFoundError(path)
        try:
            container = av.open(str(path), mode="r")
        except av.error.FFmpegError as e:
            raise CodecError(f"Unable to open {path}: {e}") from e
        logger.info(
            "[media_source] Opened %s (%s, %d streams)",
            path,
            container.format.name,
            len(container.streams),
        )
        return cls(container, path)

    @staticmethod
    def _bind_decoder(stream, kind: MediaKind) -> SelectedStream:
        decoder = stream.codec_context
        if decoder is None:
            raise CodecError(f"No decoder for stream #{stream.index}")
        decoder.open(strict=False)
        return SelectedStream(index=stream.index, kind=kind, decoder=decoder, info=_describe_stream(stream))

    def select_best(self, kind: MediaKind) -> SelectedStream | None:
        """Best stream of ``kind`` with an opened decoder; a stream whose decoder fails counts as absent."""
        if kind in self._selected:
            return self._selected[kind]

        stream = self._container.streams.best(kind.value)
        selected = None
        if stream is not None:
            try:
                selected = self._bind_decoder(stream, kind)
            except (av.error.FFmpegError, CodecError, ValueError) as e:
                logger.warning("[media_source] %s stream #%d is unusable: %s", kind.value, stream.index, e)
        if selected is not None:
            info = selected.info
            if kind == MediaKind.VIDEO:
                logger.info(
                    "[media_source] Video: #%d %s %dx%d @%.1ffps",
                    info.index,
                    info.codec_name,
                    info.width,
                    info.height,
                    info.fps,
                )
            else:
                logger.info(
                    "[media_source] Audio: #%d %s %dHz %dch",
                    info.index,
                    info.codec_name,
                    info.sample_rate,
                    info.channels,
                )
        else:
            logger.info("[media_source] No usable %s stream in %s", kind.value, self._path)
        self._selected[kind] = selected
        return selected

    def packets(self) -> Iterator[tuple[int, object]]:
        if self._packets_started:
            raise RuntimeError("Packet sequence already consumed; reopen the source to read it again")
        self._packets_started = True
        return self._iter_packets()

    def _iter_packets(self) -> Iterator[tuple[int, object]]:
        try:
            for packet in self._container.demux():
                # Demux emits empty packets at EOF to flush decoders; the distributor flushes explicitly
                if packet.size == 0:
                    continue
                yield packet.stream_index, packet
        except av.error.FFmpegError as e:
            raise CodecError(f"Demux error in {self._path}: {e}") from e

    def decode(self, stream: SelectedStream, packet) -> list[Frame]:
        try:
            decoded = stream.decoder.decode(packet)
        except av.error.FFmpegError as e:
            raise CodecError(f"Decode error on stream #{stream.index}: {e}") from e
        if stream.kind == MediaKind.VIDEO:
            return [VideoFrame.from_av(frame, stream.index) for frame in decoded]
        return [AudioFrame.from_av(frame, stream.index) for frame in decoded]

    def media_info(self) -> MediaInfo:
        video = self.select_best(MediaKind.VIDEO)
        audio = self.select_best(MediaKind.AUDIO)
        return MediaInfo(
            video=video.info if video else None,
            audio=audio.info if audio else None,
            metadata=dict(self._container.metadata),
        )

    def close(self) -> None:
        if self._container is not None:
            try:
                self._container.close()
            except Exception:
                logger.debug("[media_source] Error closing %s", self._path, exc_info=True)
            self._container = None
