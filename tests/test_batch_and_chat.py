from unittest.mock import AsyncMock, patch

import httpx
import pytest

from repostlens import config
from repostlens.services import batch_processor as bp
from repostlens.services import google_chat
from repostlens.services.optimizer import EMPTY_ANALYSIS
from repostlens.services.upstream import UpstreamError


ITEM = {
    "url": "https://holidaysmart.io/hk/article/1/x",
    "page": "https://holidaysmart.io/hk/article/1/x",
    "bestQuery": "東京自由行",
    "rank4": "東京行程(click:5, impression:200, position:4.2)",
}


@pytest.mark.asyncio
async def test_analyze_item_falls_back_when_model_is_silent():
    html = "<html><head><title>東京</title></head><body><p>內容</p></body></html>"
    vertex = AsyncMock(return_value="")
    with patch.object(bp, "fetch_page_html", AsyncMock(return_value=html)), \
            patch.object(bp, "vertex_generate", vertex):
        assert await bp.analyze_item(ITEM) == EMPTY_ANALYSIS

    prompt = vertex.await_args.args[0]
    assert "東京行程(click:5" in prompt
    assert "Existing title: 東京" in prompt


@pytest.mark.asyncio
async def test_process_item_chains_steps():
    with patch.object(bp, "analyze_item", AsyncMock(return_value="analysis")), \
            patch.object(bp, "generate_context_vector_vertex", AsyncMock(return_value=[{"before": "b"}])) as cv, \
            patch.object(bp, "generate_outline_vertex", AsyncMock(return_value="h2 A")):
        result = await bp.process_item(ITEM)

    assert result == {"success": True, "analysis": "analysis", "suggestions": [{"before": "b"}], "outline": "h2 A"}
    assert cv.await_args.args == (ITEM["url"], "analysis")


@pytest.mark.asyncio
async def test_process_batch_isolates_failures():
    ok = {"success": True, "analysis": "a", "suggestions": [], "outline": "o"}
    with patch.object(bp, "process_item", AsyncMock(side_effect=[ok, UpstreamError("Fetch failed: 500", 500)])):
        result = await bp.process_batch([ITEM, dict(ITEM, url="https://a.test/broken")])

    assert result["success"] is True
    assert result["results"][0] == ok
    assert result["results"][1] == {
        "success": False,
        "error": "Fetch failed: 500",
        "analysis": "",
        "suggestions": [],
        "outline": "",
    }


@pytest.mark.asyncio
async def test_process_batch_limit():
    with pytest.raises(ValueError, match="Maximum 10 items per batch"):
        await bp.process_batch([ITEM] * 11)


@pytest.mark.asyncio
async def test_send_analysis_requires_webhook(monkeypatch, english_analysis):
    monkeypatch.setattr(config, "GOOGLE_CHAT_WEBHOOK_URL", None)
    with pytest.raises(RuntimeError, match="Google Chat webhook URL not configured"):
        await google_chat.send_analysis_to_chat(english_analysis, "https://a.test/x", "kw")

    status = await google_chat.ping_webhook()
    assert status["configured"] is False


@pytest.mark.asyncio
async def test_send_analysis_posts_markdown(monkeypatch, english_analysis):
    monkeypatch.setattr(config, "GOOGLE_CHAT_WEBHOOK_URL", "https://chat.test/hook")
    post = AsyncMock()
    with patch.object(google_chat, "_post_message", post):
        result = await google_chat.send_analysis_to_chat(english_analysis, "https://a.test/x", "kw")

    assert result["success"] is True
    text = post.await_args.args[0]
    assert text.startswith("📊 *SEO 分析報告*")
    assert "🎯 Best Query: *kw*" in text


@pytest.mark.asyncio
async def test_ping_webhook_reports_errors(monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CHAT_WEBHOOK_URL", "https://chat.test/hook")

    with patch.object(google_chat, "_post_message", AsyncMock(side_effect=UpstreamError("x", 403))):
        status = await google_chat.ping_webhook()
    assert status == {"configured": True, "message": "Webhook configured but returned error: 403"}

    with patch.object(google_chat, "_post_message", AsyncMock(side_effect=httpx.ConnectError("refused"))):
        status = await google_chat.ping_webhook()
    assert status["message"].startswith("Webhook configured but error occurred")

    with patch.object(google_chat, "_post_message", AsyncMock()):
        status = await google_chat.ping_webhook()
    assert status == {"configured": True, "message": "Webhook configured and working"}
