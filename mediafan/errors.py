class MediafanError(Exception):
    """Base exception for everything raised by mediafan."""

    pass


class InputError(MediafanError):
    """The input could not be read from disk."""

    pass


class InputNotFoundError(InputError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"Input file not found: {path}")


class DownloadError(MediafanError):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class InvalidContentTypeError(MediafanError):
    def __init__(self, content_type: str):
        self.content_type = content_type
        super().__init__(f"Invalid content-type: {content_type!r}")


class CodecError(MediafanError):
    """Failure reported by the codec library while opening, decoding, encoding or muxing."""

    pass


class PipelineError(MediafanError):
    """A logical precondition of the pipeline was violated."""

    pass


class NoTasksError(PipelineError):
    def __init__(self):
        super().__init__("No task registered")


class NoDecodableStreamError(PipelineError):
    def __init__(self):
        super().__init__("Failed to find video and audio streams")


class PipelineStateError(PipelineError):
    pass


class WorkerTimeoutError(PipelineError):
    def __init__(self, output_file, timeout: float, stalled: bool = False):
        self.output_file = output_file
        self.timeout = timeout
        self.stalled = stalled
        if stalled:
            message = f"Encoder for {output_file} took no frame for {timeout:.1f}s and was dropped"
        else:
            message = f"No frame received for {timeout:.1f}s while encoding {output_file}"
        super().__init__(message)


class WorkerFailedError(PipelineError):
    """
    Raised after every worker has been joined and at least one of them failed.

    ``error`` is the first failure in task registration order, ``failures``
    holds every ``(task, error)`` pair.
    """

    def __init__(self, failures: list):
        self.failures = failures
        task, error = failures[0]
        self.error = error
        message = f"Encoding {task.output_file} failed: {error}"
        if len(failures) > 1:
            message += f" ({len(failures) - 1} more worker(s) failed)"
        super().__init__(message)


class HookError(MediafanError):
    pass


class HookDeliveryError(MediafanError):
    """
    Encoding finished and outputs are on disk, but some hooks were not delivered.

    ``failures`` holds ``(hook, reason)`` pairs in registration order.
    """

    def __init__(self, failures: list, result=None):
        self.failures = failures
        self.result = result
        urls = ", ".join(str(hook.url) for hook, _ in failures)
        super().__init__(f"{len(failures)} hook(s) failed: {urls}")
