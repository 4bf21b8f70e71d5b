"""
PyAV-based encoder and muxer for a single output task.

One writer owns one output container with (at most) one video and one
audio stream. Frames arrive already decoded and are shared with other
writers, so they are never modified in place: video is reformatted into
a new frame scaled to the task's dimensions, audio goes through a
per-writer resampler. Timestamps are only ever set on those private
frames. Both streams are timed from the first timestamped frame the
writer sees: video by rescaling the source pts into the encoder time
base, audio by counting samples from its own start offset.

Usage:
    writer = OutputWriter.open(task, media_info)
    writer.write_video(video_frame)
    writer.write_audio(audio_frame)
    writer.finalize()  # flushes encoders and writes the trailer
"""

import logging
from fractions import Fraction
from typing import Callable, Protocol

import av
from av.audio.resampler import AudioResampler
from av.video.reformatter import VideoReformatter

from mediafan.configs import settings
from mediafan.errors import CodecError
from mediafan.remuxer.codec_utils import even_dimension, parse_bitrate
from mediafan.remuxer.frames import AudioFrame, MediaKind, VideoFrame
from mediafan.remuxer.media_source import MediaInfo
from mediafan.schemas import Task

logger = logging.getLogger(__name__)

_VIDEO_PIX_FMT = "yuv420p"
_AUDIO_LAYOUT = "stereo"


class FrameWriter(Protocol):
    """Encode/mux boundary used by the encode workers."""

    def accepts(self, kind: MediaKind) -> bool: ...

    def write_video(self, frame: VideoFrame) -> None: ...

    def write_audio(self, frame: AudioFrame) -> None: ...

    def finalize(self) -> None: ...


WriterFactory = Callable[[Task, MediaInfo], FrameWriter]


def _copy_video_frame(frame):
    return av.VideoFrame.from_ndarray(frame.to_ndarray(), format=frame.format.name)


def _copy_audio_frame(frame):
    copy = av.AudioFrame.from_ndarray(frame.to_ndarray(), format=frame.format.name, layout=frame.layout.name)
    copy.sample_rate = frame.sample_rate
    return copy


def _encoder_options(encoder_name: str, preset: str | None) -> dict:
    opts = {}
    if encoder_name in ("libx264", "libx265"):
        opts["preset"] = preset or "medium"
        if encoder_name == "libx265":
            # Keep libx265 from printing its banner and per-frame stats
            opts["x265-params"] = "log-level=error"
    elif "nvenc" in encoder_name:
        opts["preset"] = preset or "p4"
        opts["rc"] = "vbr"
    elif "videotoolbox" in encoder_name:
        opts["allow_sw"] = "1"
    elif preset:
        opts["preset"] = preset
    return opts


class OutputWriter:
    """Encodes frames for one task and muxes them into its output file."""

    def __init__(self, task: Task, container, video_stream=None, audio_stream=None) -> None:
        self._task = task
        self._container = container
        self._video_stream = video_stream
        self._audio_stream = audio_stream
        self._reformatter = VideoReformatter()
        self._resampler: AudioResampler | None = None
        if audio_stream is not None:
            ctx = audio_stream.codec_context
            # The encoder re-chunks to its own frame size
            self._resampler = AudioResampler(format=ctx.format.name, layout=ctx.layout.name, rate=ctx.sample_rate)
        self._video_frames = 0
        self._last_video_pts = -1
        self._audio_samples = 0
        self._audio_started = False
        self._origin: float | None = None
        self._packets = 0
        self._finalized = False

    @classmethod
    def open(cls, task: Task, media_info: MediaInfo) -> "OutputWriter":
        """Create the output container and its streams. Raises CodecError."""
        try:
            task.output_file.parent.mkdir(parents=True, exist_ok=True)
            container = av.open(str(task.output_file), mode="w", format=task.format)
        except (av.error.FFmpegError, OSError) as e:
            raise CodecError(f"Unable to open output {task.output_file} as {task.format}: {e}") from e

        try:
            if media_info.metadata:
                container.metadata.update(media_info.metadata)

            video_stream = None
            if media_info.video is not None:
                rate = Fraction(media_info.video.fps or 24.0).limit_denominator(100000)
                video_stream = container.add_stream(task.encoder, rate=rate)
                ctx = video_stream.codec_context
                ctx.width = even_dimension(task.width)
                ctx.height = even_dimension(task.height)
                ctx.pix_fmt = _VIDEO_PIX_FMT
                ctx.time_base = 1 / rate
                ctx.bit_rate = parse_bitrate(task.video_bitrate or settings.default_video_bitrate)
                ctx.options = _encoder_options(task.encoder, task.preset)

            audio_stream = None
            if media_info.audio is not None and task.audio_encoder:
                audio_stream = container.add_stream(task.audio_encoder, rate=media_info.audio.sample_rate or 48000)
                ctx = audio_stream.codec_context
                ctx.layout = _AUDIO_LAYOUT
                ctx.bit_rate = settings.default_audio_bitrate
        except (av.error.FFmpegError, ValueError) as e:
            container.close()
            raise CodecError(f"Unable to configure output {task.output_file}: {e}") from e

        logger.info(
            "[output] %s: %s %dx%d (%s), audio=%s",
            task.output_file,
            task.encoder,
            even_dimension(task.width),
            even_dimension(task.height),
            task.format,
            task.audio_encoder if audio_stream is not None else "none",
        )
        return cls(task, container, video_stream=video_stream, audio_stream=audio_stream)

    def accepts(self, kind: MediaKind) -> bool:
        if kind == MediaKind.VIDEO:
            return self._video_stream is not None
        return self._audio_stream is not None

    def _mux(self, packets) -> None:
        for packet in packets:
            self._container.mux(packet)
            self._packets += 1

    def _seconds_from_origin(self, frame) -> float | None:
        """Timestamp of ``frame`` relative to the first timestamped frame this writer saw."""
        if frame.pts is None:
            return None
        if self._origin is None:
            self._origin = frame.pts_seconds
        return frame.pts_seconds - self._origin

    def _next_video_pts(self, frame: VideoFrame, time_base: Fraction) -> int:
        offset = self._seconds_from_origin(frame)
        pts = self._last_video_pts + 1
        if offset is not None:
            # Frames landing on an already used tick are pushed forward
            pts = max(pts, round(offset / time_base))
        self._last_video_pts = pts
        return pts

    def write_video(self, frame: VideoFrame) -> None:
        ctx = self._video_stream.codec_context
        try:
            out = self._reformatter.reformat(frame.data, width=ctx.width, height=ctx.height, format=_VIDEO_PIX_FMT)
            if out is frame.data:
                # No-op reformat hands back the shared frame itself
                out = _copy_video_frame(out)
            out.pts = self._next_video_pts(frame, ctx.time_base)
            out.time_base = ctx.time_base
            self._video_frames += 1
            self._mux(self._video_stream.encode(out))
        except av.error.FFmpegError as e:
            raise CodecError(f"Video encode error for {self._task.output_file}: {e}") from e

    def _encode_audio(self, frames) -> None:
        time_base = Fraction(1, self._audio_stream.codec_context.sample_rate)
        for out in frames:
            out.pts = self._audio_samples
            out.time_base = time_base
            self._audio_samples += out.samples
            self._mux(self._audio_stream.encode(out))

    def write_audio(self, frame: AudioFrame) -> None:
        if not self._audio_started:
            self._audio_started = True
            offset = self._seconds_from_origin(frame)
            if offset is not None and offset > 0:
                self._audio_samples = round(offset * self._audio_stream.codec_context.sample_rate)
        try:
            resampled = [
                _copy_audio_frame(out) if out is frame.data else out
                for out in self._resampler.resample(frame.data)
            ]
            self._encode_audio(resampled)
        except av.error.FFmpegError as e:
            raise CodecError(f"Audio encode error for {self._task.output_file}: {e}") from e

    def finalize(self) -> None:
        """
        Flush encoders and write the container trailer.

        Safe to call multiple times -- subsequent calls do nothing.
        """
        if self._finalized:
            return
        self._finalized = True
        try:
            if self._audio_stream is not None:
                self._encode_audio(self._resampler.resample(None))
                self._mux(self._audio_stream.encode(None))
            if self._video_stream is not None:
                self._mux(self._video_stream.encode(None))
        except av.error.FFmpegError as e:
            raise CodecError(f"Flush error for {self._task.output_file}: {e}") from e
        finally:
            self._container.close()

        logger.info(
            "[output] Finalized %s: %d video frames, audio up to sample %d, %d packets",
            self._task.output_file,
            self._video_frames,
            self._audio_samples,
            self._packets,
        )
