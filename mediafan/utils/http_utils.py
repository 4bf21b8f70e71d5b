import logging

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from mediafan.configs import settings
from mediafan.errors import DownloadError

logger = logging.getLogger(__name__)


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.Client:
    """
    Create an HTTPX Client configured from the transport settings.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional Client keyword arguments (``transport`` overrides the mounts).

    Returns:
        httpx.Client: Configured client.
    """
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    kwargs.setdefault("headers", {"user-agent": settings.user_agent})
    if "transport" not in kwargs:
        kwargs["mounts"] = settings.transport_config.get_mounts()
    return httpx.Client(follow_redirects=follow_redirects, **kwargs)


@retry(
    stop=stop_after_attempt(settings.download_retries),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
def _send_with_retry(client: httpx.Client, request: httpx.Request) -> httpx.Response:
    return client.send(request, stream=True)


def open_stream_with_retry(client: httpx.Client, method: str, url: str, headers: dict | None = None) -> httpx.Response:
    """
    Open a streaming response, retrying transient network errors.

    The caller owns the returned response and must close it.

    Raises:
        DownloadError: If the request fails after retries or returns a non-2xx status.
    """
    request = client.build_request(method, url, headers=headers)
    try:
        response = _send_with_retry(client, request)
    except httpx.TimeoutException:
        logger.warning(f"Timeout while downloading {url}")
        raise DownloadError(409, f"Timeout while downloading {url}")
    except httpx.TransportError as e:
        logger.error(f"Network error while downloading {url}: {e}")
        raise DownloadError(502, f"Network error while downloading {url}: {e}")

    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        response.close()
        logger.error(f"HTTP error {e.response.status_code} while downloading {url}")
        raise DownloadError(e.response.status_code, f"HTTP error {e.response.status_code} while downloading {url}")
    return response
