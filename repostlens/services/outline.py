import asyncio
import logging
from typing import Any, Dict, List

from repostlens.services.llm_clients import chat_complete, vertex_generate
from repostlens.services.upstream import UpstreamError

log = logging.getLogger(__name__)

MAX_ANALYSIS_CHARS = 8000
MAX_BATCH_ITEMS = 10

OUTLINE_SYSTEM_PROMPT = (
    "你是資深內容規劃顧問，擅長將分析報告整理成清晰的文章建議大綱，輸出請使用與 user prompt 相同的語言。"
)

# Batch runs feed pages that already carry a quick-navigation block
BATCH_OUTLINE_RULES = (
    ", do not include analysis suggest as h tag which is not article but a suggestion. "
    "不要提供 快速導航 h2，已經有了"
)


def build_outline_prompt(analysis_text: str, *, batch: bool = False) -> str:
    text = analysis_text[:MAX_ANALYSIS_CHARS]
    prompt = (
        f"{text}\n------\n\n"
        "根據上述，給我一個 h2/h3 文章大綱\n\n"
        "格式如下：\n\n"
        "h2 xxx\nh3 xxx\n----\n"
        "以上是 prompt, 不要有任何其他建議，只需要輸出文章大綱"
    )
    if batch:
        prompt += BATCH_OUTLINE_RULES
    return prompt


async def generate_outline(analysis_text: str, *, batch: bool = False) -> str:
    outline = await chat_complete(
        build_outline_prompt(analysis_text, batch=batch),
        system=OUTLINE_SYSTEM_PROMPT,
    )
    if not outline:
        raise UpstreamError("Empty outline")
    return outline


async def generate_outline_vertex(analysis_text: str) -> str:
    """Same prompt on Gemini; an empty answer is returned as-is."""
    return await vertex_generate(
        build_outline_prompt(analysis_text),
        system="你是資深內容規劃顧問，擅長將分析報告整理成清晰的文章建議大綱。",
    )


async def _outline_item(item: Any) -> Dict[str, Any]:
    text = item.get("analysisText") if isinstance(item, dict) else None
    text = text.strip() if isinstance(text, str) else ""
    if not text:
        return {"success": False, "error": "Missing analysisText"}
    try:
        outline = await generate_outline(text, batch=True)
    except Exception as e:
        log.warning("Outline batch item failed: %s", e)
        return {"success": False, "error": str(e) or "Unknown error"}
    return {"success": True, "outline": outline}


async def generate_outline_batch(items: List[Any]) -> List[Dict[str, Any]]:
    """
    One outline per item, concurrently. Item failures are reported in place
    and never abort the batch.
    """
    if not items:
        raise ValueError("No items provided")
    if len(items) > MAX_BATCH_ITEMS:
        raise ValueError(f"Maximum {MAX_BATCH_ITEMS} items per batch")
    return list(await asyncio.gather(*(_outline_item(item) for item in items)))
