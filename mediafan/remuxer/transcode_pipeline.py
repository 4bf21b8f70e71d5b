"""
Single-pass, multi-output transcode pipeline.

The controller decodes its input once and fans every frame out to one
encode worker per registered task:

  media source --> FrameDistributor --> BroadcastChannel --+--> EncodeWorker(task 1) --> output 1
                   (caller's thread)    (capacity N - 1)   +--> EncodeWorker(task 2) --> output 2
                                                           +--> ...

Once the input is exhausted the channel is closed, every worker is
joined, and only when all of them succeeded are the hooks fired.

States:
  CONFIGURING -> RUNNING -> JOINING -> NOTIFYING -> IDLE
  RUNNING -> FAILED (stream selection failure, no decodable stream, decode error)
  JOINING -> FAILED (worker failure)

Usage:
    with TranscodePipeline.open("https://example.com/video.mp4") as pipeline:
        pipeline.add_task(Task(width=1280, height=720, output_file="x264.mp4", encoder="libx264", format="mp4"))
        pipeline.add_hook(Hook(url="https://example.com/done"))
        pipeline.run()
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from mediafan.configs import settings
from mediafan.errors import (
    HookDeliveryError,
    NoDecodableStreamError,
    NoTasksError,
    PipelineStateError,
    WorkerFailedError,
)
from mediafan.hooks import HookNotifier, HookResult
from mediafan.remuxer.broadcast import BroadcastChannel
from mediafan.remuxer.codec_utils import init_codec_library
from mediafan.remuxer.distributor import DistributionStats, FrameDistributor
from mediafan.remuxer.encode_worker import EncodeWorker, WorkerResult
from mediafan.remuxer.frames import MediaKind
from mediafan.remuxer.media_source import MediaSource, PyAVMediaSource
from mediafan.remuxer.output_writer import OutputWriter, WriterFactory
from mediafan.schemas import Hook, Task
from mediafan.utils.input_resolver import ResolvedInput, resolve_input

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    CONFIGURING = "configuring"
    RUNNING = "running"
    JOINING = "joining"
    NOTIFYING = "notifying"
    IDLE = "idle"
    FAILED = "failed"


_CONFIGURABLE_STATES = frozenset({PipelineState.CONFIGURING, PipelineState.IDLE, PipelineState.FAILED})


@dataclass
class PipelineResult:
    outputs: list[Path] = field(default_factory=list)
    stats: DistributionStats = field(default_factory=DistributionStats)
    workers: list[WorkerResult] = field(default_factory=list)
    hooks: list[HookResult] = field(default_factory=list)


class TranscodePipeline:
    """Decodes one input once and encodes it into every registered task's output."""

    def __init__(
        self,
        source: MediaSource,
        *,
        dest: Path | None = None,
        output_dir: Path | None = None,
        resolved_input: ResolvedInput | None = None,
        writer_factory: WriterFactory = OutputWriter.open,
        notifier: HookNotifier | None = None,
        idle_timeout: float | None = None,
    ) -> None:
        self.source = source
        self.dest = dest
        self.output_dir = Path(output_dir) if output_dir is not None else Path.cwd()
        self.input = resolved_input
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.worker_idle_timeout
        self.state = PipelineState.CONFIGURING
        self._writer_factory = writer_factory
        self._notifier = notifier or HookNotifier()
        self._tasks: list[Task] = []
        self._hooks: list[Hook] = []

    @classmethod
    def open(cls, source: str, **kwargs) -> "TranscodePipeline":
        """Resolve ``source`` (path or URL), open it with PyAV and build a pipeline around it."""
        init_codec_library()
        dest = Path(tempfile.mkdtemp(prefix=settings.scratch_dir_prefix))
        try:
            resolved = resolve_input(source, download_dir=dest)
            try:
                media = PyAVMediaSource.open(resolved.path)
            except Exception:
                resolved.close()
                raise
        except Exception:
            shutil.rmtree(dest, ignore_errors=True)
            raise
        return cls(media, dest=dest, resolved_input=resolved, **kwargs)

    @property
    def tasks(self) -> tuple[Task, ...]:
        return tuple(self._tasks)

    @property
    def hooks(self) -> tuple[Hook, ...]:
        return tuple(self._hooks)

    def _ensure_configurable(self) -> None:
        if self.state not in _CONFIGURABLE_STATES:
            raise PipelineStateError(f"Pipeline is {self.state.value}; it cannot be reconfigured now")

    def add_task(self, task: Task) -> "TranscodePipeline":
        self._ensure_configurable()
        if not task.output_file.is_absolute():
            task = task.model_copy(update={"output_file": self.output_dir / task.output_file})
        self._tasks.append(task)
        return self

    def add_hook(self, hook: Hook) -> "TranscodePipeline":
        self._ensure_configurable()
        self._hooks.append(hook)
        return self

    def _clear(self) -> None:
        self._tasks.clear()
        self._hooks.clear()

    def _idle_timeout_for(self, task: Task) -> float:
        return task.idle_timeout or self.idle_timeout

    def _spawn_workers(self, channel: BroadcastChannel, media_info, workers: list[EncodeWorker]) -> None:
        # Every receiver must exist before the first publish
        receivers = [channel.add_receiver(stall_timeout=self._idle_timeout_for(task)) for task in self._tasks]
        try:
            for task, receiver in zip(self._tasks, receivers):
                writer = self._writer_factory(task, media_info)
                worker = EncodeWorker(task, receiver, writer, self._idle_timeout_for(task))
                worker.start()
                workers.append(worker)
        except Exception:
            # Receivers without a worker would block the producer forever
            for receiver in receivers[len(workers):]:
                receiver.close()
            raise

    def run(self) -> PipelineResult:
        """
        Run the pipeline to completion.

        Raises:
            NoTasksError: no task was registered (nothing is started).
            NoDecodableStreamError: the input has neither audio nor video (nothing is started).
            CodecError: stream selection failed (nothing is started).
            CodecError: decoding failed or an output could not be opened; raised after all workers joined.
            WorkerFailedError: at least one worker failed; raised after all workers joined.
            HookDeliveryError: outputs are complete but some hooks were not delivered.
        """
        self._ensure_configurable()
        if not self._tasks:
            raise NoTasksError()

        self.state = PipelineState.RUNNING
        try:
            video = self.source.select_best(MediaKind.VIDEO)
            audio = self.source.select_best(MediaKind.AUDIO)
        except Exception:
            self.state = PipelineState.FAILED
            raise
        if video is None and audio is None:
            self.state = PipelineState.FAILED
            raise NoDecodableStreamError()

        logger.info(
            "[pipeline] Starting %d task(s), video=%s audio=%s",
            len(self._tasks),
            f"#{video.index}" if video else "none",
            f"#{audio.index}" if audio else "none",
        )

        result = PipelineResult(outputs=[task.output_file for task in self._tasks])
        channel = BroadcastChannel(capacity=len(self._tasks) - 1)
        workers: list[EncodeWorker] = []
        run_error: Exception | None = None
        try:
            self._spawn_workers(channel, self.source.media_info(), workers)
            result.stats = FrameDistributor(self.source, channel, video=video, audio=audio).run()
        except Exception as e:
            logger.error("[pipeline] Aborting distribution: %s", e)
            run_error = e
        finally:
            channel.close()

        self.state = PipelineState.JOINING
        result.workers = [worker.join() for worker in workers]
        failures = [(r.task, r.error) for r in result.workers if not r.ok]
        for task, error in failures:
            logger.error("[pipeline] Worker for %s failed: %s", task.output_file, error)

        if run_error is not None or failures:
            self._clear()
            self.state = PipelineState.FAILED
            if run_error is not None:
                raise run_error
            raise WorkerFailedError(failures)

        self.state = PipelineState.NOTIFYING
        result.hooks = self._notifier.notify(list(self._hooks), payload=self._hook_payload(result))
        self._clear()
        self.state = PipelineState.IDLE

        failed_hooks = [(r.hook, r.error) for r in result.hooks if not r.delivered]
        if failed_hooks:
            raise HookDeliveryError(failed_hooks, result=result)

        logger.info("[pipeline] Completed: %s", ", ".join(str(p) for p in result.outputs))
        return result

    def _hook_payload(self, result: PipelineResult) -> dict:
        return {
            "status": "completed",
            "input": self.input.source if self.input is not None else None,
            "outputs": [str(p) for p in result.outputs],
            "frames": result.stats.frames,
        }

    def close(self) -> None:
        """Release the input and remove the scratch directory. Outputs are left in place."""
        self.source.close()
        if self.input is not None:
            self.input.close()
        if self.dest is not None:
            shutil.rmtree(self.dest, ignore_errors=True)

    def __enter__(self) -> "TranscodePipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
