"""
Encode worker: one thread per output task.

The worker pulls frames from its own broadcast receiver and hands them
to the task's writer until the channel is closed (normal end, the output
is finalized) or no frame arrives within the idle budget. A worker that
spends longer than that budget without taking a frame is evicted by the
producer and fails the same way. Failures are kept on the worker's
``result`` and reported when the controller joins it; they never affect
sibling workers.
"""

import logging
import threading
import time
from dataclasses import dataclass

from mediafan.errors import WorkerTimeoutError
from mediafan.remuxer.broadcast import BroadcastReceiver, ChannelClosed, ReceiverStalled, RecvTimeout
from mediafan.remuxer.frames import MediaKind
from mediafan.remuxer.output_writer import FrameWriter
from mediafan.schemas import Task

logger = logging.getLogger(__name__)


@dataclass
class WorkerResult:
    task: Task
    frames_written: int = 0
    frames_skipped: int = 0
    error: Exception | None = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class EncodeWorker:
    def __init__(
        self,
        task: Task,
        receiver: BroadcastReceiver,
        writer: FrameWriter,
        idle_timeout: float,
    ) -> None:
        self.task = task
        self._receiver = receiver
        self._writer = writer
        self._idle_timeout = idle_timeout
        self._thread: threading.Thread | None = None
        self.result = WorkerResult(task=task)

    @property
    def name(self) -> str:
        return f"encode-{self.task.output_file.name}"

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Worker {self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name)
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float | None = None) -> WorkerResult:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.result

    def _consume(self) -> None:
        result = self.result
        while True:
            try:
                frame = self._receiver.recv(timeout=self._idle_timeout)
            except ChannelClosed:
                return
            except RecvTimeout:
                raise WorkerTimeoutError(self.task.output_file, self._idle_timeout) from None
            except ReceiverStalled:
                raise WorkerTimeoutError(self.task.output_file, self._idle_timeout, stalled=True) from None

            if not self._writer.accepts(frame.kind):
                result.frames_skipped += 1
                continue

            if frame.kind == MediaKind.VIDEO:
                logger.debug(
                    "[worker] %s: video frame %dx%d pts=%s",
                    self.name,
                    frame.width,
                    frame.height,
                    frame.pts,
                )
                self._writer.write_video(frame)
            else:
                logger.debug("[worker] %s: audio frame pts=%s", self.name, frame.pts)
                self._writer.write_audio(frame)
            result.frames_written += 1

    def _run(self) -> None:
        start = time.monotonic()
        try:
            self._consume()
        except Exception as e:
            # Detach first so the producer stops waiting on this receiver
            self._receiver.close()
            self.result.error = e
            logger.error("[worker] %s failed: %s", self.name, e)
            try:
                self._writer.finalize()
            except Exception:
                logger.warning("[worker] %s: could not finalize partial output", self.name, exc_info=True)
        else:
            try:
                self._writer.finalize()
            except Exception as e:
                self.result.error = e
                logger.error("[worker] %s failed to finalize: %s", self.name, e)
        finally:
            self._receiver.close()
            self.result.elapsed_seconds = time.monotonic() - start

        logger.info(
            "[worker] %s finished: %d frames written, %d skipped in %.2fs%s",
            self.name,
            self.result.frames_written,
            self.result.frames_skipped,
            self.result.elapsed_seconds,
            "" if self.result.ok else " (failed)",
        )
