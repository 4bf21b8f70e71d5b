"""
Single-pass transcoding core.

- frames: Typed, immutable decoded frames shared between workers
- media_source: MediaSource protocol and PyAV implementation (demux + decode)
- broadcast: Bounded single-producer / multi-consumer broadcast channel
- distributor: The decode loop publishing frames to the channel
- output_writer: PyAV encoder + muxer for one output task
- encode_worker: One thread per task consuming frames from its receiver
- codec_utils: One-shot codec library init and codec helpers
- transcode_pipeline: Controller orchestrating workers, decode loop and hooks
"""
