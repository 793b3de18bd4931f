import logging
from datetime import datetime, timezone
from typing import Any, Dict

import httpx

from repostlens import config
from repostlens.services.analysis_extractor import TAIPEI_TZ, extract_analysis_data, format_as_markdown
from repostlens.services.upstream import UpstreamError

log = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 15


async def _post_message(text: str) -> None:
    async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
        resp = await client.post(config.GOOGLE_CHAT_WEBHOOK_URL, json={"text": text})
    if resp.status_code >= 400:
        log.error("Google Chat API error %s: %s", resp.status_code, resp.text[:200])
        raise UpstreamError(f"Failed to send to Google Chat: {resp.status_code}", resp.status_code, resp.text)


async def send_analysis_to_chat(analysis: str, page_url: str, best_query: str) -> Dict[str, Any]:
    if not config.GOOGLE_CHAT_WEBHOOK_URL:
        raise RuntimeError("Google Chat webhook URL not configured")

    data = extract_analysis_data(analysis, page_url, best_query)
    await _post_message(format_as_markdown(data))
    return {"success": True, "message": "Analysis sent to Google Chat successfully"}


async def ping_webhook() -> Dict[str, Any]:
    """Post a ping; reports configuration state instead of raising."""
    if not config.GOOGLE_CHAT_WEBHOOK_URL:
        return {
            "configured": False,
            "message": "Google Chat webhook URL not configured in environment variables",
        }

    stamp = datetime.now(timezone.utc).astimezone(TAIPEI_TZ).strftime("%Y/%m/%d %H:%M:%S")
    try:
        await _post_message(
            "🔔 RepostLens Test Message\n\nGoogle Chat integration is working correctly!\n\n"
            f"Timestamp: {stamp}"
        )
    except UpstreamError as e:
        return {"configured": True, "message": f"Webhook configured but returned error: {e.status}"}
    except httpx.HTTPError as e:
        return {"configured": True, "message": f"Webhook configured but error occurred: {e}"}
    return {"configured": True, "message": "Webhook configured and working"}
