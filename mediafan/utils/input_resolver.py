"""
Turns the user's input (local path or URL) into a local file path.

Remote inputs are downloaded into a named temporary file that lives
until the ResolvedInput is closed, so it stays valid for the whole run.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx
from tqdm import tqdm

from mediafan.configs import settings
from mediafan.const import REMOTE_SCHEMES, SUPPORTED_CONTENT_TYPES
from mediafan.errors import DownloadError, InputError, InputNotFoundError, InvalidContentTypeError
from mediafan.utils.http_utils import create_httpx_client, open_stream_with_retry

logger = logging.getLogger(__name__)


def _extract_extension(path: str) -> str:
    """Extract lowercase file extension (e.g. '.mkv') from a path."""
    dot_pos = path.rfind(".")
    if dot_pos < 0 or "/" in path[dot_pos:]:
        return ""
    return path[dot_pos:].lower()


def filename_hint_from_url(url: str) -> str:
    """Derive a filename hint from a URL path (e.g. '.mkv', '.mp4')."""
    try:
        parsed = urlparse(url)
        return _extract_extension(unquote(parsed.path))
    except ValueError:
        return ""


def check_content_type(content_type: str | None) -> None:
    """Reject responses whose content-type is present but neither video/* nor audio/*."""
    if not content_type:
        return
    major, sep, _ = content_type.partition("/")
    if not sep or major.strip().lower() not in SUPPORTED_CONTENT_TYPES:
        raise InvalidContentTypeError(content_type)


class ResolvedInput:
    """A readable local file; temporary downloads are removed on close()."""

    def __init__(self, path: Path, temporary: bool = False, source: str | None = None) -> None:
        self.path = path
        self.temporary = temporary
        self.source = source or str(path)

    def close(self) -> None:
        if self.temporary and self.path.exists():
            try:
                self.path.unlink()
                logger.debug("[input] Removed temporary download %s", self.path)
            except OSError:
                logger.warning("[input] Could not remove temporary download %s", self.path, exc_info=True)

    def __enter__(self) -> "ResolvedInput":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def is_remote(source: str) -> bool:
    return urlparse(source).scheme.lower() in REMOTE_SCHEMES


def resolve_input(
    source: str, client: httpx.Client | None = None, download_dir: Path | None = None
) -> ResolvedInput:
    """
    Resolve a path or URL into a local file.

    Raises:
        InputNotFoundError: local path does not exist.
        InvalidContentTypeError: the server announced a non audio/video content-type.
        DownloadError: the download failed.
    """
    if is_remote(source):
        if client is not None:
            return _download(source, client, download_dir)
        with create_httpx_client() as own_client:
            return _download(source, own_client, download_dir)

    parsed = urlparse(source)
    path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(source)
    if not path.is_file():
        raise InputNotFoundError(path)
    logger.info("[input] Using local file %s", path)
    return ResolvedInput(path, source=source)


def _download(url: str, client: httpx.Client, download_dir: Path | None = None) -> ResolvedInput:
    response = open_stream_with_retry(client, "GET", url)
    try:
        check_content_type(response.headers.get("content-type"))

        size = int(response.headers.get("content-length") or 0)
        logger.info("[input] Downloading %s (%s bytes)", url, size or "unknown")
        start = time.monotonic()

        fd, tmp_name = tempfile.mkstemp(
            prefix=settings.scratch_dir_prefix,
            suffix=filename_hint_from_url(url),
            dir=download_dir,
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as tmp, tqdm(
                total=size or None,
                unit="B",
                unit_scale=True,
                desc="download",
                disable=not settings.enable_download_progress,
            ) as progress:
                for chunk in response.iter_bytes(chunk_size=settings.download_chunk_size):
                    tmp.write(chunk)
                    progress.update(len(chunk))
        except httpx.TransportError as e:
            tmp_path.unlink(missing_ok=True)
            raise DownloadError(502, f"Network error while downloading {url}: {e}") from e
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise InputError(f"Could not write download to {tmp_path}: {e}") from e
    finally:
        response.close()

    logger.info("[input] Download finished in %.2fs at %s", time.monotonic() - start, tmp_path)
    return ResolvedInput(tmp_path, temporary=True, source=url)
