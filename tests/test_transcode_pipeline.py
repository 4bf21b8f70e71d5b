import tempfile
import threading
from pathlib import Path

import pytest

from conftest import AUDIO_INDEX, VIDEO_INDEX, DummyMediaSource, WriterRegistry
from mediafan.errors import (
    CodecError,
    HookDeliveryError,
    NoDecodableStreamError,
    NoTasksError,
    WorkerFailedError,
    WorkerTimeoutError,
)
from mediafan.hooks import HookResult
from mediafan.remuxer.frames import MediaKind
from mediafan.remuxer.transcode_pipeline import PipelineState, TranscodePipeline
from mediafan.schemas import Hook, Task


class DummyNotifier:
    def __init__(self, failing: tuple[str, ...] = ()) -> None:
        self.failing = failing
        self.calls = []

    def notify(self, hooks, payload=None):
        self.calls.append((list(hooks), payload))
        return [
            HookResult(hook=hook, delivered=hook.url not in self.failing, status_code=500 if hook.url in self.failing else 200)
            for hook in hooks
        ]


def _task(name: str, width: int = 1280, height: int = 720, encoder: str = "libx264", **kwargs) -> Task:
    return Task(width=width, height=height, output_file=name, encoder=encoder, format="mp4", **kwargs)


@pytest.fixture
def make_pipeline(tmp_path, writers):
    created = []

    def _make(source, notifier=None, **kwargs):
        pipeline = TranscodePipeline(
            source,
            output_dir=tmp_path,
            writer_factory=writers,
            notifier=notifier or DummyNotifier(),
            **kwargs,
        )
        created.append(pipeline)
        return pipeline

    yield _make
    for pipeline in created:
        pipeline.close()


def test_two_tasks_receive_both_frames_and_hooks_fire_in_order(make_pipeline, writers, tmp_path):
    source = DummyMediaSource([(VIDEO_INDEX, 0), (VIDEO_INDEX, 1)])
    notifier = DummyNotifier()
    pipeline = make_pipeline(source, notifier=notifier)
    first = Hook(url="https://example.com/first")
    second = Hook(url="https://example.com/second", method="get")

    (
        pipeline.add_task(_task("x264.mp4"))
        .add_task(_task("x265.mp4", width=1920, height=1080, encoder="libx265"))
        .add_hook(first)
        .add_hook(second)
    )
    result = pipeline.run()

    assert writers.writers["x264.mp4"].pts == [(MediaKind.VIDEO, 0), (MediaKind.VIDEO, 1)]
    assert writers.writers["x265.mp4"].pts == [(MediaKind.VIDEO, 0), (MediaKind.VIDEO, 1)]
    assert all(w.finalized == 1 for w in writers.writers.values())
    assert result.outputs == [tmp_path / "x264.mp4", tmp_path / "x265.mp4"]
    assert [r.frames_written for r in result.workers] == [2, 2]
    assert result.stats.video_frames == 2

    hooks, payload = notifier.calls[0]
    assert hooks == [first, second]
    assert payload["outputs"] == [str(tmp_path / "x264.mp4"), str(tmp_path / "x265.mp4")]
    assert [r.hook for r in result.hooks] == [first, second]

    assert pipeline.tasks == ()
    assert pipeline.hooks == ()
    assert pipeline.state == PipelineState.IDLE


def test_all_workers_see_the_same_interleaved_sequence(make_pipeline, writers):
    packets = []
    for i in range(50):
        packets.append((VIDEO_INDEX, i))
        packets.append((AUDIO_INDEX, 1000 + i))
    source = DummyMediaSource(packets, video=True, audio=True)
    pipeline = make_pipeline(source)
    for name in ("a.mp4", "b.mp4", "c.mp4", "d.mp4"):
        pipeline.add_task(_task(name))

    pipeline.run()

    expected = [
        (MediaKind.VIDEO if stream == VIDEO_INDEX else MediaKind.AUDIO, pts) for stream, pts in packets
    ]
    for writer in writers.writers.values():
        assert writer.pts == expected


def test_single_task_pipeline(make_pipeline, writers):
    source = DummyMediaSource([(VIDEO_INDEX, pts) for pts in range(10)])
    pipeline = make_pipeline(source)
    pipeline.add_task(_task("only.mp4"))

    result = pipeline.run()

    assert [f.pts for f in writers.writers["only.mp4"].frames] == list(range(10))
    assert result.workers[0].ok


def test_run_without_tasks_starts_nothing(make_pipeline, writers):
    source = DummyMediaSource([(VIDEO_INDEX, 0)])
    pipeline = make_pipeline(source)
    threads_before = threading.active_count()

    with pytest.raises(NoTasksError):
        pipeline.run()

    assert threading.active_count() == threads_before
    assert writers.writers == {}
    assert source.decoded == []


def test_input_without_audio_or_video_starts_nothing(make_pipeline, writers):
    source = DummyMediaSource([(VIDEO_INDEX, 0)], video=False, audio=False)
    pipeline = make_pipeline(source)
    pipeline.add_task(_task("x264.mp4"))
    threads_before = threading.active_count()

    with pytest.raises(NoDecodableStreamError):
        pipeline.run()

    assert threading.active_count() == threads_before
    assert writers.writers == {}
    assert pipeline.state == PipelineState.FAILED


def test_decode_error_joins_every_worker_before_raising(make_pipeline, writers):
    source = DummyMediaSource([(VIDEO_INDEX, pts) for pts in range(20)], fail_at=5)
    notifier = DummyNotifier()
    pipeline = make_pipeline(source, notifier=notifier)
    pipeline.add_task(_task("a.mp4")).add_task(_task("b.mp4")).add_hook(Hook(url="https://example.com/hook"))

    with pytest.raises(CodecError):
        pipeline.run()

    assert not [t for t in threading.enumerate() if t.name.startswith("encode-")]
    for writer in writers.writers.values():
        assert [f.pts for f in writer.frames] == [0, 1, 2, 3, 4]
        assert writer.finalized == 1
    assert notifier.calls == []
    assert pipeline.state == PipelineState.FAILED
    assert pipeline.tasks == ()


def test_output_open_failure_joins_started_workers():
    registry = WriterRegistry()
    registry.fail_open.add("b.mp4")
    source = DummyMediaSource([(VIDEO_INDEX, 0)])
    pipeline = TranscodePipeline(source, writer_factory=registry, notifier=DummyNotifier())
    pipeline.add_task(_task("/tmp/a.mp4")).add_task(_task("/tmp/b.mp4")).add_task(_task("/tmp/c.mp4"))

    try:
        with pytest.raises(CodecError):
            pipeline.run()
    finally:
        pipeline.close()

    assert not [t for t in threading.enumerate() if t.name.startswith("encode-")]
    assert list(registry.writers) == ["a.mp4"]
    assert registry.writers["a.mp4"].finalized == 1
    assert source.decoded == []


def test_first_worker_failure_is_reported_after_all_joins(tmp_path):
    registry = WriterRegistry(**{"b.mp4": {"fail_at": 1}, "c.mp4": {"fail_at": 2}})
    source = DummyMediaSource([(VIDEO_INDEX, pts) for pts in range(5)])
    notifier = DummyNotifier()
    pipeline = TranscodePipeline(source, output_dir=tmp_path, writer_factory=registry, notifier=notifier)
    pipeline.add_task(_task("a.mp4")).add_task(_task("b.mp4")).add_task(_task("c.mp4"))
    pipeline.add_hook(Hook(url="https://example.com/hook"))

    try:
        with pytest.raises(WorkerFailedError) as exc_info:
            pipeline.run()
    finally:
        pipeline.close()

    error = exc_info.value
    assert error.failures[0][0].output_file == tmp_path / "b.mp4"
    assert [task.output_file.name for task, _ in error.failures] == ["b.mp4", "c.mp4"]
    assert isinstance(error.error, CodecError)
    # The healthy sibling still got everything
    assert [f.pts for f in registry.writers["a.mp4"].frames] == [0, 1, 2, 3, 4]
    assert notifier.calls == []
    assert pipeline.state == PipelineState.FAILED
    assert pipeline.hooks == ()


def test_stalled_worker_times_out_while_sibling_completes(tmp_path):
    registry = WriterRegistry()
    source = DummyMediaSource([(VIDEO_INDEX, pts) for pts in range(4)], packet_delay=0.2)
    pipeline = TranscodePipeline(source, output_dir=tmp_path, writer_factory=registry, notifier=DummyNotifier())
    pipeline.add_task(_task("impatient.mp4", idle_timeout=0.05)).add_task(_task("patient.mp4"))

    try:
        with pytest.raises(WorkerFailedError) as exc_info:
            pipeline.run()
    finally:
        pipeline.close()

    error = exc_info.value
    assert len(error.failures) == 1
    assert isinstance(error.error, WorkerTimeoutError)
    assert error.failures[0][0].output_file.name == "impatient.mp4"
    assert [f.pts for f in registry.writers["patient.mp4"].frames] == [0, 1, 2, 3]
    assert registry.writers["patient.mp4"].finalized == 1


def test_hook_failure_is_reported_after_every_hook_fired(make_pipeline, writers):
    source = DummyMediaSource([(VIDEO_INDEX, 0)])
    notifier = DummyNotifier(failing=("https://example.com/broken",))
    pipeline = make_pipeline(source, notifier=notifier)
    hooks = [
        Hook(url="https://example.com/broken"),
        Hook(url="https://example.com/ok"),
    ]
    pipeline.add_task(_task("x264.mp4"))
    for hook in hooks:
        pipeline.add_hook(hook)

    with pytest.raises(HookDeliveryError) as exc_info:
        pipeline.run()

    assert notifier.calls[0][0] == hooks
    assert [hook for hook, _ in exc_info.value.failures] == [hooks[0]]
    assert exc_info.value.result.workers[0].ok
    assert writers.writers["x264.mp4"].finalized == 1
    # Encoding succeeded, so the pipeline is reusable rather than failed
    assert pipeline.state == PipelineState.IDLE


def test_lists_are_cleared_so_a_second_run_needs_new_tasks(make_pipeline):
    source = DummyMediaSource([(VIDEO_INDEX, 0)])
    pipeline = make_pipeline(source)
    pipeline.add_task(_task("x264.mp4"))
    pipeline.run()

    with pytest.raises(NoTasksError):
        pipeline.run()


def test_relative_outputs_are_placed_in_the_output_dir(make_pipeline, tmp_path):
    pipeline = make_pipeline(DummyMediaSource([]))
    pipeline.add_task(_task("nested/out.mp4"))
    pipeline.add_task(_task("/abs/out.mp4"))

    assert [t.output_file for t in pipeline.tasks] == [tmp_path / "nested/out.mp4", Path("/abs/out.mp4")]


def test_pipeline_around_a_ready_source_creates_no_scratch_dir(tmp_path, writers, monkeypatch):
    temp_root = tmp_path / "tmp"
    temp_root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(temp_root))
    source = DummyMediaSource([(VIDEO_INDEX, 0)])
    pipeline = TranscodePipeline(source, output_dir=tmp_path, writer_factory=writers, notifier=DummyNotifier())
    pipeline.add_task(_task("out.mp4"))
    pipeline.run()

    assert pipeline.dest is None
    assert list(temp_root.iterdir()) == []
    pipeline.close()
    assert source.closed


def test_close_removes_scratch_dir_and_closes_source(tmp_path, writers):
    source = DummyMediaSource([])
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    (scratch / "download.mp4").write_bytes(b"data")
    pipeline = TranscodePipeline(source, dest=scratch, writer_factory=writers, notifier=DummyNotifier())

    with pipeline:
        pass

    assert not pipeline.dest.exists()
    assert source.closed


def test_slow_worker_is_dropped_while_its_sibling_gets_every_frame(tmp_path):
    registry = WriterRegistry(**{"stalled.mp4": {"write_delay": 1.0}})
    source = DummyMediaSource([(VIDEO_INDEX, pts) for pts in range(6)])
    pipeline = TranscodePipeline(
        source, output_dir=tmp_path, writer_factory=registry, notifier=DummyNotifier(), idle_timeout=0.3
    )
    pipeline.add_task(_task("healthy.mp4")).add_task(_task("stalled.mp4"))

    try:
        with pytest.raises(WorkerFailedError) as exc_info:
            pipeline.run()
    finally:
        pipeline.close()

    error = exc_info.value
    assert [task.output_file.name for task, _ in error.failures] == ["stalled.mp4"]
    assert isinstance(error.error, WorkerTimeoutError)
    assert error.error.stalled
    assert [f.pts for f in registry.writers["healthy.mp4"].frames] == [0, 1, 2, 3, 4, 5]
    assert [f.pts for f in registry.writers["stalled.mp4"].frames] == [0]
    assert registry.writers["stalled.mp4"].finalized == 1


class BrokenSelectionSource(DummyMediaSource):
    def select_best(self, kind):
        raise CodecError("Unable to open decoder")


def test_stream_selection_error_fails_the_run_and_allows_reconfiguration(make_pipeline, writers):
    pipeline = make_pipeline(BrokenSelectionSource([(VIDEO_INDEX, 0)]))
    pipeline.add_task(_task("x264.mp4"))

    with pytest.raises(CodecError):
        pipeline.run()

    assert pipeline.state == PipelineState.FAILED
    assert writers.writers == {}
    pipeline.add_task(_task("x265.mp4")).add_hook(Hook(url="https://example.com/hook"))
    assert [t.output_file.name for t in pipeline.tasks] == ["x264.mp4", "x265.mp4"]
