import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from repostlens import config
from repostlens.services.llm_clients import chat_complete
from repostlens.services.upstream import UpstreamError, get_json

log = logging.getLogger(__name__)

NO_SUGGESTIONS = "無建議"
SUGGESTION_MODEL = "gpt-4.1-mini"


async def fetch_keyword_coverage(url: str) -> Optional[Dict[str, List[Dict[str, Any]]]]:
    """
    Covered keywords (with optional GSC stats) and uncovered ones with
    search volume, or None when the coverage service has nothing for us.
    """
    try:
        data = await get_json(config.COVERAGE_API_URL + quote(url, safe=""))
    except (UpstreamError, httpx.HTTPError) as e:
        log.warning("Coverage lookup failed for %s: %s", url, e)
        return None
    if not isinstance(data, dict) or not data.get("success"):
        return None
    covered = data.get("covered")
    uncovered = data.get("uncovered")
    return {
        "covered": covered if isinstance(covered, list) else [],
        "uncovered": uncovered if isinstance(uncovered, list) else [],
    }


def _clicks(item: Any) -> float:
    gsc = item.get("gsc") if isinstance(item, dict) else None
    if isinstance(gsc, dict) and isinstance(gsc.get("clicks"), (int, float)):
        return gsc["clicks"]
    return 0


def clamp_limit(limit: Any, default: int = 20) -> int:
    try:
        value = int(float(limit)) if limit else default
    except (TypeError, ValueError):
        value = default
    return max(1, min(100, value or default))


def select_coverage_keywords(data: Dict[str, List[Dict[str, Any]]], limit: int = 20):
    """Top `limit` covered keywords by clicks, padded with uncovered ones."""
    take = clamp_limit(limit)
    covered = sorted(data.get("covered") or [], key=_clicks, reverse=True)[:take]
    remaining = max(0, take - len(covered))
    uncovered = (data.get("uncovered") or [])[:remaining]
    return covered, uncovered


def _sv(item: Dict[str, Any]) -> str:
    sv = item.get("searchVolume")
    return "N/A" if sv is None else str(sv)


def build_coverage_prompt_parts(covered: List[Dict[str, Any]], uncovered: List[Dict[str, Any]]) -> Dict[str, str]:
    covered_lines = []
    for item in covered or []:
        gsc = item.get("gsc")
        if isinstance(gsc, dict):
            pos = gsc.get("avgPosition")
            avg_pos = f"{pos:.1f}" if isinstance(pos, (int, float)) else "N/A"
            covered_lines.append(
                f"{item.get('text')} (SV: {_sv(item)}, Clicks: {gsc.get('clicks')}, "
                f"Imp: {gsc.get('impressions')}, Pos: {avg_pos})"
            )
        else:
            covered_lines.append(f"{item.get('text')} (SV: {_sv(item)})")

    uncovered_lines = [f"{k.get('text')} (SV: {_sv(k)})" for k in uncovered or []]
    return {
        "coveredText": "\n".join(covered_lines) or "無",
        "uncoveredText": "\n".join(uncovered_lines) or "無",
    }


def build_suggestion_prompt(covered_text: str, uncovered_text: str) -> str:
    return f"""你是一位頂尖的 SEO 內容策略師。你的任務是分析一份網頁的關鍵字成效報告，並從「未覆蓋關鍵字」列表中，智慧地挑選出最有潛力的新關鍵字，以擴展內容的深度與廣度。

# 背景資訊
- **已覆蓋關鍵字 (Covered Keywords):**
{covered_text}

- **未覆蓋關鍵字 (Uncovered Keywords):**
{uncovered_text}

# 你的任務（精簡版）
請根據上述資料，從「未覆蓋關鍵字」中挑選最符合以下條件的詞：
1. 與已覆蓋強勢關鍵字具高度語意關聯；
2. 能補足內容缺口、降低使用者決策阻力；
3. 具可行搜尋意圖、且有實際搜尋量。

# 輸出格式要求（務必遵守）
- 僅輸出關鍵字本身，每行一個；
- 不要包含任何解釋、標題、編號或符號；
- 若沒有建議，僅輸出「{NO_SUGGESTIONS}」。"""


async def request_suggestions(
    covered: List[Dict[str, Any]],
    uncovered: List[Dict[str, Any]],
    model: Optional[str] = None,
) -> str:
    """Newline-separated uncovered keywords worth adding."""
    parts = build_coverage_prompt_parts(covered, uncovered)
    reply = await chat_complete(
        build_suggestion_prompt(parts["coveredText"], parts["uncoveredText"]),
        model=model or SUGGESTION_MODEL,
        temperature=0.2,
    )
    return reply or NO_SUGGESTIONS
