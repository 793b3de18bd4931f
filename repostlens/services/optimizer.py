# optimizer.py

import logging
from typing import Any, Dict, List, Optional

from repostlens.services.analysis_extractor import split_sections
from repostlens.services.llm_clients import chat_complete
from repostlens.services.page_content import (
    extract_page_content,
    fetch_page_html,
    locale_for,
)

log = logging.getLogger(__name__)

EMPTY_ANALYSIS = "無法生成分析結果"

ANALYZE_SYSTEM_PROMPT = """
## 你的角色
你是 SEO 語義劫持專家，專責分析搜尋意圖與規劃詞組等價策略。
分析指定文章的 SEO 語意劫持機會，並基於 Rank 4-10 的關鍵字數據，設計使用 Best Query 進行語意等價策略。
- Analyze the SEO intent capture potential for this article and devise strategies to leverage Rank 4-10 keyword data for semantically equivalent query planning.
""".strip()

BATCH_SYSTEM_PROMPT = "你是 SEO 語義劫持專家，專責分析搜尋意圖與規劃詞組等價策略。"

MID_RANKS = ("rank4", "rank5", "rank6", "rank7", "rank8", "rank9", "rank10")
TOP_RANKS = ("rank1", "rank2", "rank3")


def fmt_metric(value: Any, default: str = "0") -> str:
    """120.0 -> "120", None/0/"" -> default."""
    if value in (None, "", 0):
        return default
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def rank_lines(metrics: Dict[str, Any], keys=MID_RANKS) -> List[str]:
    return [str(metrics[k]) for k in keys if metrics.get(k)]


def _best_query_line(metrics: Dict[str, Any]) -> str:
    return (
        f"\"{metrics.get('bestQuery') or 'N/A'}\" - {fmt_metric(metrics.get('bestQueryClicks'))} clicks"
        f" - Average rank {fmt_metric(metrics.get('bestQueryPosition'), 'N/A')}"
    )


def _prev_best_line(metrics: Dict[str, Any]) -> str:
    if not metrics.get("prevBestQuery"):
        return "N/A"
    return (
        f"\"{metrics['prevBestQuery']}\" - {fmt_metric(metrics.get('prevBestClicks'))} clicks"
        f" - Average rank {fmt_metric(metrics.get('prevBestPosition'), 'N/A')}"
    )


def build_analyze_prompt(page: str, metrics: Dict[str, Any], content: Dict[str, str]) -> str:
    locale = locale_for(page)
    keywords_list = "\n".join(rank_lines(metrics))
    has_changed = bool(metrics.get("prevBestQuery")) and metrics.get("bestQuery") != metrics.get("prevBestQuery")

    return f"""
# Role and Objective
Act as an SEO semantic hijacking strategist. Analyze Rank 4–10 keyword data to identify and prioritize low-friction, high-opportunity terms for semantic equivalence with the Best Query, focusing on user satisfaction and intent match.

## Instructions
- Begin with a concise checklist (3–7 bullets) of what you will do; keep items conceptual.
- Using the input data, decide which keywords are valid semantic hijacking opportunities.
- Compare each candidate with the Best Query and the previous best query, factoring in changes and keyword tail type.
- Do not halt on missing data; write 'N/A' instead.
- Follow the exact output format and Markdown structure (## and ### headers) below; it is parsed automatically.
- Ground every recommendation in the data.
- All phrasing and title suggestions must follow the regional language and tone.

**Essential Element Checklist for Each Recommendation:**
1. Does this keyword represent a "core gap" in the Best Query?
2. Does adding it measurably reduce user decision friction?
3. Would hijacking fail without it?
Only recommend items that answer "yes" to all three.

**Semantic Equivalence Validation:**
If a user searching the Best Query receives content for the suggested keyword, would they be satisfied? Only then treat it as equivalent.

# Context Data
- Article URL: {page}
- Regional language: {locale['language']}
- Tone requirements: {locale['tone']}
- Existing title: {content.get('title', '')}
- Meta description: {content.get('metaDescription', '')}
- OG title: {content.get('ogTitle', '')}
- Best Query (Rank 1-3): {_best_query_line(metrics)}
- Previous Best Query: {_prev_best_line(metrics)}
- Has changed: {'true' if has_changed else 'false'}
Keyword list (Rank 4-10):
{keywords_list}

## Data Format Explanation
- Each keyword entry: keyword(click: X, impression: Y, position: Z)
- Low-click terms tend to be specific needs; high-click terms tend to be broad, familiar terms
- A changed Best Query means an earlier hijack succeeded or failed; check the new keyword's tail length
- Article excerpt:
{content.get('text', '')[:4000]}

# Reasoning Steps
1. Dissect the Best Query for user intent
2. Classify each Rank 4–10 term as Equivalent / Subordinate / Related / Unrelated
3. Scenario test: would the content satisfy a Best Query user if substituted?
4. Identify article gaps and which terms fill them
5. Recommend only Equivalent or Subordinate terms
6. Evaluate combined value of terms
7. Decide whether REPOST or NEW POST is optimal
8. Finish with a compact checklist of critical changes only

# Output Format
## Search Characteristic Analysis
- Best Query core intent, user friction, key changes (3–5 sentences)
## Semantic Hijacking Opportunities
### Keyword Type Analysis (Rank 4–10)
| Keyword Type | Keywords | Relation to Original | Difficulty | Action |
|--------------|----------|---------------------|------------|--------|
| Vertical | [list] | Direct | Low | REPOST |
| Expandable | [list] | Expansion needed | Med-High | NEW POST |
| Distant | [list] | Parallel | High | NEW POST |
### Semantic Relationship Assessment
| Keyword | Relation to Best Query | Can Hijack | Rationale |
|---------|------------------------|------------|-----------|
### Gap Analysis
- Best Query user needs: [describe]
- Article gaps: [list]
- Terms filling gaps: [list or N/A]
## Core Hijacking Strategy (Essential Elements Only)
### Essential Element: [Main keyword]
- **Semantic Relation**: [Equivalent/Subordinate] with explanation
- **User Satisfaction**: [Yes/No with brief justification]
- **Why Essential**: [why the hijack fails without it]
- **Combination**: [synergistic terms, if any]
- **Target Type**: [Vertical/Expandable/Distant]
- **Hijacking Statement**: [how it matches the Best Query]
- **Change Required**: [Minor/Paragraph/Structural]
- **Expected Effect**: [anticipated outcome]
### Strategy Decision
Recommendation: REPOST or NEW POST
Reason: [succinct justification]
## Implementation Priority
### Immediate Actions (Essentials)
- [1–3 mission-critical changes]
### Optional Enhancements
- [non-essentials]
## 📝 Required Execution Items
1. Most crucial modification
2. Secondary (if needed)
- State REPOST or NEW POST

# Output Requirements
- Concise: core insights in 3–5 sentences, actions as lists
- Data-driven: reference specific keywords and fields
- Replace missing data with 'N/A'; if there is no essential opportunity write "No obvious hijacking opportunity"
- Never reveal chain-of-thought reasoning
""".strip()


def build_batch_analyze_prompt(page: str, metrics: Dict[str, Any], content: Dict[str, str]) -> str:
    """Shorter analysis prompt for sheet batches; trades depth for latency."""
    locale = locale_for(page)
    high_rank = rank_lines(metrics, TOP_RANKS)
    return f"""
# Role and Objective
Act as an SEO semantic hijacking strategist. Analyze Rank 4–10 keyword data to identify and prioritize low-friction, high-opportunity terms for semantic equivalence with the Best Query, focusing on user satisfaction and intent match.

# Context Data
- Article URL: {page}
- Regional language: {locale['language']} - {locale['tone']}
- Existing title: {content.get('title', '')}
- Meta description: {content.get('metaDescription', '')}
- Best Query (Rank 1-3): {_best_query_line(metrics)}
- Previous Best Query: {_prev_best_line(metrics)}
- High-performing keywords (Rank 1-3):
{chr(10).join(high_rank) if high_rank else 'N/A'}
- Keyword list (Rank 4-10):
{chr(10).join(rank_lines(metrics))}

- Article excerpt:
{content.get('text', '')[:4000]}

# Output Format
Provide a concise analysis focusing on semantic hijacking opportunities and implementation recommendations.
""".strip()


async def analyze_page(page: str, metrics: Dict[str, Any], model: Optional[str] = None) -> Dict[str, Any]:
    """
    Fetch the article, build the hijacking prompt from its text and the
    keyword metrics, and split the model's answer into sections.
    """
    html = await fetch_page_html(page)
    content = extract_page_content(html)

    prompt = build_analyze_prompt(page, metrics, content)
    analysis = await chat_complete(prompt, system=ANALYZE_SYSTEM_PROMPT, model=model)
    if not analysis:
        log.warning("Empty analysis for %s", page)
        analysis = EMPTY_ANALYSIS

    return {
        "success": True,
        "analysis": analysis,
        "sections": split_sections(analysis),
        "keywordsAnalyzed": len(rank_lines(metrics)),
    }
