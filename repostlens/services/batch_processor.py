import asyncio
import logging
from typing import Any, Dict, List

from repostlens.services.context_vector import generate_context_vector_vertex
from repostlens.services.llm_clients import vertex_generate
from repostlens.services.optimizer import (
    BATCH_SYSTEM_PROMPT,
    EMPTY_ANALYSIS,
    build_batch_analyze_prompt,
)
from repostlens.services.outline import generate_outline_vertex
from repostlens.services.page_content import extract_page_content, fetch_page_html

log = logging.getLogger(__name__)

MAX_BATCH_ITEMS = 10


async def analyze_item(item: Dict[str, Any]) -> str:
    page = item["page"]
    content = extract_page_content(await fetch_page_html(page))
    analysis = await vertex_generate(
        build_batch_analyze_prompt(page, item, content),
        system=BATCH_SYSTEM_PROMPT,
    )
    return analysis or EMPTY_ANALYSIS


async def process_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """analyze -> context vector -> outline for one sheet row."""
    analysis = await analyze_item(item)
    suggestions = await generate_context_vector_vertex(item["url"], analysis)
    outline = await generate_outline_vertex(analysis)
    return {"success": True, "analysis": analysis, "suggestions": suggestions, "outline": outline}


async def _process_isolated(index: int, total: int, item: Dict[str, Any]) -> Dict[str, Any]:
    log.info("Batch item %d/%d: %s", index + 1, total, item.get("url"))
    try:
        return await process_item(item)
    except Exception as e:
        log.error("Batch item %d/%d failed (%s): %s", index + 1, total, item.get("url"), e)
        return {
            "success": False,
            "error": str(e) or "Unknown error",
            "analysis": "",
            "suggestions": [],
            "outline": "",
        }


async def process_batch(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    if len(items) > MAX_BATCH_ITEMS:
        raise ValueError(f"Maximum {MAX_BATCH_ITEMS} items per batch")

    results = list(await asyncio.gather(
        *(_process_isolated(i, len(items), item) for i, item in enumerate(items))
    ))
    log.info("Batch completed: %d/%d succeeded", sum(1 for r in results if r["success"]), len(results))
    return {"success": True, "results": results}
