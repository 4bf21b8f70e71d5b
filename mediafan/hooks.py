import logging
from dataclasses import dataclass

import httpx

from mediafan.configs import settings
from mediafan.errors import HookError
from mediafan.schemas import Hook
from mediafan.utils.http_utils import create_httpx_client

logger = logging.getLogger(__name__)

_BODYLESS_METHODS = frozenset({"GET", "HEAD", "DELETE"})


@dataclass
class HookResult:
    hook: Hook
    delivered: bool
    status_code: int | None = None
    error: str | None = None


def _send(hook: Hook, client: httpx.Client, payload: dict | None) -> httpx.Response:
    kwargs = {"timeout": settings.hook_timeout}
    if payload is not None and hook.method not in _BODYLESS_METHODS:
        kwargs["json"] = payload
    try:
        return client.request(hook.method, hook.url, **kwargs)
    except httpx.HTTPError as e:
        raise HookError(f"{hook.method} {hook.url} failed: {e}") from e


def deliver_hook(hook: Hook, client: httpx.Client, payload: dict | None = None) -> bool:
    """
    Send one notification.

    Returns:
        True if the endpoint answered with a 2xx status.

    Raises:
        HookError: the request could not be sent.
    """
    return _send(hook, client, payload).is_success


class HookNotifier:
    """Delivers hooks in order; a failing hook never prevents the next one from firing."""

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client

    def _deliver_all(self, client: httpx.Client, hooks: list[Hook], payload: dict | None) -> list[HookResult]:
        results = []
        for hook in hooks:
            try:
                response = _send(hook, client, payload)
            except HookError as e:
                logger.error("[hooks] %s", e)
                results.append(HookResult(hook=hook, delivered=False, error=str(e)))
                continue

            if response.is_success:
                logger.info("[hooks] %s %s -> %d", hook.method, hook.url, response.status_code)
                results.append(HookResult(hook=hook, delivered=True, status_code=response.status_code))
            else:
                logger.warning("[hooks] %s %s -> %d", hook.method, hook.url, response.status_code)
                results.append(
                    HookResult(
                        hook=hook,
                        delivered=False,
                        status_code=response.status_code,
                        error=f"HTTP {response.status_code}",
                    )
                )
        return results

    def notify(self, hooks: list[Hook], payload: dict | None = None) -> list[HookResult]:
        """Fire every hook in registration order and return one result per hook."""
        if not hooks:
            return []
        if self._client is not None:
            return self._deliver_all(self._client, hooks, payload)
        with create_httpx_client() as client:
            return self._deliver_all(client, hooks, payload)
