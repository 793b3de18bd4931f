"""
Context vectors: concrete paragraph-level edits that carry an analysis
into the existing article.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from repostlens.services.llm_clients import parse_structured, vertex_generate
from repostlens.services.page_content import (
    fetch_article_via_proxy,
    fetch_page_html,
    to_plain_text,
)

log = logging.getLogger(__name__)

MAX_ARTICLE_CHARS = 8000

TABLE_HEADER = "| 原文片段 | 建議調整 |"
TABLE_DIVIDER = "|:---|:---|"
EMPTY_TABLE = f"{TABLE_HEADER}\n{TABLE_DIVIDER}\n| 目前無需調整 | — |"

SYSTEM_PROMPT = "你是資深 SEO 策略師，輸出必須符合指定 JSON 結構。"


class ContextVectorSuggestion(BaseModel):
    before: str = Field(min_length=20)
    whyProblemNow: str = Field(min_length=1, max_length=40)
    adjustAsFollows: str = Field(min_length=1, max_length=40)
    afterAdjust: str = Field(min_length=40)


class ContextVectorResponse(BaseModel):
    suggestions: List[ContextVectorSuggestion]


class LenientSuggestion(BaseModel):
    """Gemini output used by batch runs; afterAdjust may be missing."""

    before: str = Field(min_length=20)
    whyProblemNow: str = Field(min_length=1, max_length=80)
    adjustAsFollows: str = Field(min_length=1)
    afterAdjust: Optional[str] = Field(default=None, min_length=20)


class LenientResponse(BaseModel):
    suggestions: List[LenientSuggestion]


def build_context_vector_prompt(analysis_text: str, article_text: str) -> str:
    return f"""## Inputs
- Reference analysis (markdown)
{analysis_text or ''}
- Original article (plain text excerpt)
{article_text or ''}

## Task
Identify the two or three highest impact content gaps and propose adjustments.

## Output format (MUST FOLLOW)
Return JSON matching the provided schema. Use Traditional Chinese for textual fields. Each suggestion must include:
- before: 原文片段 (>= 20 chars)
- whyProblemNow: 明確說明 SEO 缺口，40 字以內
- adjustAsFollows: 描述建議的行動指令（文字即可）
- afterAdjust: 調整後可直接放入文章的語句 (>= 40 chars)
If no adjustments are needed, return {{"suggestions": []}}.

## Guardrails
- Do not modify meta tags, fast-view blocks, or the table of contents.
- Each suggestion must explicitly explain the SEO gap and give a precise adjustment.
- Keep strings single-line (use \\n for breaks); avoid Markdown tables or HTML tags.
"""


def build_batch_context_vector_prompt(analysis_text: str, article_text: str) -> str:
    return f"""## 角色與目標
你是一位資深 SEO onPage 優化專家，根據提供的分析內容與原文片段，找出最多三項關鍵內容缺口。

## 必須輸出的 JSON 結構
{{
  "suggestions": [
    {{
      "before": "原文片段，至少 20 字",
      "whyProblemNow": "40 字以內的 SEO 問題說明",
      "adjustAsFollows": "說明調整方向／操作重點",
      "afterAdjust": "完整可置入的新段落，至少 20 字"
    }}
  ]
}}

## 輸入資料
- 參考分析：{analysis_text or ''}
- 原文文章片段：{article_text or ''}

## 輸出守則
- 僅填上述欄位，所有字串使用繁體中文
- whyProblemNow 限 40 字以內；afterAdjust 至少 20 字
- 建議依 SEO 影響度排序，最多 3 筆
"""


def normalize_suggestion(s: Any) -> Dict[str, str]:
    return {
        "before": s.before.strip(),
        "whyProblemNow": s.whyProblemNow.strip(),
        "adjustAsFollows": s.adjustAsFollows.strip(),
        "afterAdjust": (s.afterAdjust or "").strip(),
    }


def _escape_pipes(text: str) -> str:
    return text.replace("|", "\\|")


def build_markdown_table(suggestions: List[Dict[str, str]]) -> str:
    if not suggestions:
        return EMPTY_TABLE
    rows = [TABLE_HEADER, TABLE_DIVIDER]
    for item in suggestions:
        right = f"{item['whyProblemNow']}\n{item['adjustAsFollows']}\n{item['afterAdjust']}".strip()
        rows.append(f"| {_escape_pipes(item['before'])} | {_escape_pipes(right)} |")
    return "\n".join(rows)


async def generate_context_vector(analysis_text: str, page_url: str) -> Dict[str, Any]:
    article_html = await fetch_article_via_proxy(page_url)
    article = to_plain_text(article_html)[:MAX_ARTICLE_CHARS]

    parsed = await parse_structured(
        build_context_vector_prompt(analysis_text, article),
        ContextVectorResponse,
        system=SYSTEM_PROMPT,
    )
    suggestions = [normalize_suggestion(s) for s in (parsed.suggestions if parsed else [])]
    return {"success": True, "suggestions": suggestions, "markdown": build_markdown_table(suggestions)}


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_lenient_suggestions(text: str) -> List[Dict[str, str]]:
    """Anything that does not validate counts as no suggestions."""
    try:
        parsed = LenientResponse.model_validate(json.loads(_strip_code_fence(text)))
    except (ValueError, ValidationError) as e:
        log.warning("Context vector JSON did not validate: %s", e)
        return []
    return [normalize_suggestion(s) for s in parsed.suggestions]


async def generate_context_vector_vertex(page_url: str, analysis_text: str) -> List[Dict[str, str]]:
    """
    Batch flavour: reads the live page instead of the proxy and returns []
    whenever the page or the model answer is unusable.
    """
    try:
        article = to_plain_text(await fetch_page_html(page_url))[:MAX_ARTICLE_CHARS]
    except Exception as e:
        log.warning("Could not fetch %s for context vector: %s", page_url, e)
        article = ""
    if not article:
        return []

    text = await vertex_generate(
        build_batch_context_vector_prompt(analysis_text, article),
        system=SYSTEM_PROMPT,
        json_output=True,
    )
    return parse_lenient_suggestions(text)
