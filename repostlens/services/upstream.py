import json
import logging
from typing import Any, Dict, Optional

import httpx

log = logging.getLogger(__name__)

# ngrok-hosted services show an interstitial page without this header
NGROK_HEADERS = {"ngrok-skip-browser-warning": "true"}

DEFAULT_TIMEOUT = 40


class UpstreamError(Exception):
    """A third-party service answered with a non-2xx status."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.message = message
        self.status = status
        self.body = (body or "")[:500]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.message}
        if self.status is not None:
            data["status"] = self.status
        if self.body:
            data["body"] = self.body
        return data


def parse_json_text(text: str, default: Any = None) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return default


async def post_json(
    url: str,
    payload: Dict[str, Any],
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    error_message: Optional[str] = None,
) -> Any:
    """
    POST a JSON body and return the decoded reply (or [] when the body is not JSON).
    Non-2xx raises UpstreamError carrying the first 500 chars of the body.
    """
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(url, json=payload, headers=headers)
    text = resp.text
    if resp.status_code >= 400:
        log.warning("POST %s -> %s: %s", url, resp.status_code, text[:200])
        message = (error_message or "Upstream error {status}").format(status=resp.status_code)
        raise UpstreamError(message, resp.status_code, text)
    return parse_json_text(text, default=[])


async def get_json(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.get(url, headers=headers)
    text = resp.text
    if resp.status_code >= 400:
        log.warning("GET %s -> %s: %s", url, resp.status_code, text[:200])
        raise UpstreamError(f"Upstream error {resp.status_code}", resp.status_code, text)
    return parse_json_text(text, default=text)
