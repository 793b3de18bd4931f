"""
Best-effort parsing of analysis text into structured fields.

The analysis prompt asks for a fixed Markdown layout (## Implementation
Priority, ### Immediate Actions, ...), but older runs used a Chinese layout
(實施優先級, 立即執行（必備改動）, 必備執行項目 ...). Both are handled.
"""

import csv
import io
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from repostlens import config
from repostlens.services.llm_clients import chat_complete

log = logging.getLogger(__name__)

REPOST = "REPOST"
NEW_POST = "NEW POST"

# Taiwan has no DST
TAIPEI_TZ = timezone(timedelta(hours=8))

_STRATEGY_PATTERNS = [
    re.compile(r"### Strategy Decision[\s\S]*?Recommendation:\s*(REPOST|NEW POST)", re.I),
    re.compile(r"Recommendation:\s*(REPOST|NEW POST)", re.I),
    re.compile(r"Strategy:\s*(REPOST|NEW POST)", re.I),
    re.compile(r"Approach:\s*(REPOST|NEW POST)", re.I),
    re.compile(r"建議[（(](REPOST|NEW POST)[／/]?\s*(?:NEW POST|REPOST)?[）)]", re.I),
    re.compile(r"### 策略判斷[\s\S]*?建議[（(](REPOST|NEW POST)", re.I),
    re.compile(r"### 實施方式[：:]\s*\[?(REPOST|NEW POST)\]?", re.I),
    re.compile(r"實施方式[：:]\s*\[?(REPOST|NEW POST)\]?", re.I),
    re.compile(r"\*\*建議\*?\*?[：:]\s*\[?(REPOST|NEW POST)\]?", re.I),
    re.compile(r"建議[：:]\s*\[?(REPOST|NEW POST)\]?", re.I),
    re.compile(r"策略判斷[\s\S]*?建議[：:]\s*\[?(REPOST|NEW POST)\]?", re.I),
]

_CN_NUMERAL_ITEM = re.compile(r"^[一二三四五六七八九十]+[、.]\s*")
_NUMBERED_ITEM = re.compile(r"^\d+\.\s*")


def determine_strategy(text: str) -> str:
    for pattern in _STRATEGY_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return match.group(1).upper().strip()
    # REPOST is the conservative default
    return REPOST


def extract_section(text: str, start_marker: str, end_marker: Optional[str] = None) -> str:
    """Text from start_marker up to (not including) end_marker, or to the end."""
    start = text.find(start_marker)
    if start == -1:
        return ""
    end = text.find(end_marker, start) if end_marker else -1
    return text[start:end] if end != -1 else text[start:]


def extract_list_items(text: str) -> List[str]:
    items = []
    for line in (text or "").split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("- "):
            items.append(stripped[2:].strip())
        elif re.match(r"^\d+\.\s", stripped):
            items.append(_NUMBERED_ITEM.sub("", stripped, count=1).strip())
        elif _CN_NUMERAL_ITEM.match(stripped):
            items.append(_CN_NUMERAL_ITEM.sub("", stripped, count=1).strip())
    return [item for item in items if item and "N/A" not in item]


def extract_paragraph_items(text: str) -> List[str]:
    """Sentence-per-item fallback for prose answers."""
    items = []
    for sentence in re.split(r"。(?!」)", text or ""):
        stripped = sentence.strip()
        if len(stripped) > 10 and "N/A" not in stripped:
            items.append(stripped if stripped.endswith("。") else stripped + "。")

    if not items:
        for line in (text or "").split("\n"):
            stripped = line.strip()
            if len(stripped) > 10 and not stripped.startswith("#") and "N/A" not in stripped:
                items.append(stripped)
    return items


def _items(text: str) -> List[str]:
    return extract_list_items(text) or extract_paragraph_items(text)


def _first_match(patterns, text: str) -> Optional[str]:
    for pattern in patterns:
        match = re.search(pattern, text, re.S)
        if match:
            return match.group(0)
    return None


def _extract_priority(priority_section: str) -> Dict[str, List[str]]:
    short_term: List[str] = []
    semantic_hijack: List[str] = []

    immediate = _first_match(
        [
            r"### Immediate Actions[\s\S]*?(?=### Optional Enhancements|確認與備註|$)",
            r"立即執行[（(]必備改動[）)][\s\S]*?(?=可選優化|$)",
        ],
        priority_section,
    )
    if immediate:
        body = re.sub(r"### Immediate Actions[^:\n]*:", "", immediate, count=1).strip()
        short_term = _items(body)

    optional = _first_match(
        [
            r"### Optional Enhancements[\s\S]*?(?=##|確認與備註|$)",
            r"可選優化[（(][^）)]*[）)][\s\S]*?(?=##|$)",
        ],
        priority_section,
    )
    if optional:
        body = optional.replace("### Optional Enhancements", "", 1).strip()
        semantic_hijack = _items(body)

    # Older layouts
    if not short_term:
        legacy = _first_match(
            [r"短期優化[（(][^）)]+[）)][\s\S]*?(?=語義劫持布局|$)", r"### 📈 短期優化[^#]*?(?=###|$)"],
            priority_section,
        )
        if legacy:
            short_term = extract_list_items(legacy)
    if not semantic_hijack:
        legacy = _first_match(
            [r"語義劫持布局[（(][^）)]+[）)][\s\S]*?(?=必備執行項目|$)", r"### 🎯 語義劫持布局[^#]*?(?=###|$)"],
            priority_section,
        )
        if legacy:
            semantic_hijack = extract_list_items(legacy)

    return {"shortTerm": short_term, "semanticHijack": semantic_hijack}


def _execution_section(analysis_text: str, priority_section: str) -> str:
    if priority_section:
        section = extract_section(priority_section, "### Immediate Actions", "### Optional Enhancements")
        if section:
            return section
    for start, end in (
        ("## 📝 Required Execution Items", None),
        ("## Required Execution Checklist", None),
        ("必備執行項目", "實施方式"),
        ("## 📝 必備執行項目", None),
    ):
        section = extract_section(analysis_text, start, end)
        if section:
            return section
    return ""


def _extract_execution_list(section: str) -> List[str]:
    if not section:
        return []
    items = _items(section)
    if items:
        return items

    # "最關鍵改動：xxx。理由：yyy"
    for line in section.split("\n"):
        match = re.match(r"^(最關鍵改動|次關鍵改動|第三項)[：:]\s*(.+)$", line.strip())
        if match:
            content = match.group(2).split("。理由：")[0].strip()
            if content:
                items.append(content)
    return items


def _clean_value(match: Optional[re.Match]) -> str:
    if not match:
        return ""
    value = match.group(1).strip()
    return "" if value == "N/A" else value


def extract_analysis_data(analysis_text: str, page: str, best_query: Optional[str]) -> Dict[str, Any]:
    text = analysis_text or ""
    strategy = determine_strategy(text)

    priority_section = extract_section(text, "## Implementation Priority") or extract_section(
        text, "實施優先級", "必備執行項目"
    )
    if priority_section:
        priority = _extract_priority(priority_section)
    else:
        priority = {"shortTerm": [], "semanticHijack": []}

    execution_list = _extract_execution_list(_execution_section(text, priority_section))

    title_suggestion = ""
    best_opportunity = ""
    strategy_section = extract_section(
        text, "## Core Hijacking Strategy", "## Implementation Priority"
    ) or extract_section(text, "### Essential Element", "## Implementation Priority")
    if strategy_section:
        best_opportunity = _clean_value(re.search(r"### Essential Element:\s*([^\n]+)", strategy_section))
        title_suggestion = _clean_value(re.search(r"\*\*Hijacking Statement\*\*:\s*([^\n]+)", strategy_section))

    if not title_suggestion:
        pattern = r"標題調整為「([^」]+)」" if strategy == REPOST else r"新文章主題「([^」]+)」"
        match = re.search(pattern, text)
        if match:
            title_suggestion = match.group(1)

    new_post_topic = ""
    if strategy == NEW_POST:
        new_post_topic = _clean_value(re.search(r"\*\*Target Type\*\*:\s*([^\n]+)", text))
        if not new_post_topic:
            match = re.search(r"處理\s+\[([^\]]+)\]", text)
            if match:
                new_post_topic = match.group(1).strip()

    data: Dict[str, Any] = {
        "page": page,
        "bestQuery": best_query or "Unknown Query",
        "strategy": strategy,
        "priority": priority,
        "executionList": execution_list,
    }
    if title_suggestion:
        data["titleSuggestion"] = title_suggestion
    if new_post_topic:
        data["newPostTopic"] = new_post_topic
    if best_opportunity:
        data["bestOpportunity"] = best_opportunity
    return data


def _taipei_now(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(TAIPEI_TZ).strftime("%Y/%m/%d %H:%M:%S")


def format_as_markdown(data: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Google Chat flavoured summary."""
    lines = [
        "📊 *SEO 分析報告*",
        f"📍 頁面: {data['page']}",
        f"🎯 Best Query: *{data['bestQuery']}*",
        f"📝 策略: *{data['strategy']}*",
        "",
    ]
    short_term = data["priority"]["shortTerm"]
    semantic = data["priority"]["semanticHijack"]

    if short_term:
        lines.append("*📈 立即執行項目:*")
        lines.extend(f"• {item}" for item in short_term)
        lines.append("")
    if semantic:
        lines.append("*🎯 可選優化項目:*")
        lines.extend(f"• {item}" for item in semantic)
        lines.append("")
    if data["executionList"]:
        lines.append(f"*📝 {data['strategy']} 執行清單:*")
        lines.extend(f"{i}. {item}" for i, item in enumerate(data["executionList"], 1))
        lines.append("")
    if data.get("bestOpportunity"):
        lines.extend([f"*🔑 最佳機會:* {data['bestOpportunity']}", ""])
    if data.get("titleSuggestion"):
        lines.extend([f"*📰 標題建議:* \"{data['titleSuggestion']}\"", ""])

    lines.append(f"⏰ {_taipei_now(now)}")
    return "\n".join(lines)


def format_as_csv(data: Dict[str, Any]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["URL", "Best Query", "Strategy", "Core Action", "Opportunity", "Title Suggestion"])
    writer.writerow(
        [
            data["page"],
            data["bestQuery"],
            data["strategy"],
            data["executionList"][0] if data["executionList"] else "",
            data.get("bestOpportunity", ""),
            data.get("titleSuggestion", ""),
        ]
    )
    return buf.getvalue().rstrip("\n")


def format_raw_csv(page: str, best_query: str, analysis_text: str) -> str:
    """url, best_query and the untouched analysis as one fully quoted row."""
    buf = io.StringIO()
    buf.write("url,best_query,analysis\n")
    csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n").writerow(
        [page or "", best_query or "", analysis_text or ""]
    )
    return buf.getvalue().rstrip("\n")


def parse_email_xml(text: str) -> Optional[Dict[str, Any]]:
    """
    Read the <email_fields> block the extraction prompt asks for.
    None when any required tag is missing.
    """

    def tag(name: str) -> str:
        match = re.search(rf"<{name}>([\s\S]*?)</{name}>", text or "", re.I)
        return match.group(1).strip() if match else ""

    subject = tag("subject")
    key_opportunity = tag("key_opportunity")
    top_actions = tag("top_actions")
    strategy_insight = tag("strategy_insight")
    if not (subject and key_opportunity and top_actions and strategy_insight):
        return None

    return {
        "subject": subject,
        "keyOpportunity": key_opportunity,
        "topActions": [a.strip() for a in top_actions.split("|") if a.strip()],
        "strategyInsight": strategy_insight,
        "immediateWin": tag("immediate_win") or None,
    }


def _numbered(items: List[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


async def generate_email_fields(data: Dict[str, Any], analysis_text: str) -> Optional[Dict[str, Any]]:
    """Ask the model for the top 20% of the analysis as XML. None on any failure."""
    prompt = f"""
Based on the following SEO analysis, extract the most critical 20% of information for an email summary.
Focus on actionable insights that drive immediate value.

Current Analysis:
- Page: {data['page']}
- Target Query: {data['bestQuery']}
- Strategy: {data['strategy']}
- Key Opportunity: {data.get('bestOpportunity') or 'Not specified'}
- Title Suggestion: {data.get('titleSuggestion') or 'Not specified'}

Immediate Actions (Top Priority):
{_numbered(data['priority']['shortTerm'][:3])}

Optional Enhancements:
{_numbered(data['priority']['semanticHijack'][:2])}

Full Analysis Context:
{(analysis_text or '')[:2000]}

Return ONLY an XML structure with these fields:
<email_fields>
  <subject>One compelling subject line that captures the core value (max 60 chars)</subject>
  <key_opportunity>The single most important opportunity in 1-2 sentences</key_opportunity>
  <top_actions>The 1-3 most critical actions, separated by |</top_actions>
  <strategy_insight>One sentence explaining why this strategy will work</strategy_insight>
  <immediate_win>Optional: One quick win that can be implemented today</immediate_win>
</email_fields>

Requirements:
- Be extremely concise and action-oriented
- Use clear, non-technical language
- Do NOT include any text outside the XML tags
""".strip()

    try:
        reply = await chat_complete(
            prompt,
            system=(
                "You are an expert at extracting key insights from SEO analysis reports. "
                "Focus on the most actionable and high-impact information only."
            ),
            model=config.DEFAULT_EXTRACT_MODEL,
            temperature=0.3,
        )
    except Exception as e:
        log.error("Email field extraction failed: %s", e)
        return None

    fields = parse_email_xml(reply)
    if fields is None:
        log.warning("Email field reply was not valid XML, using plain format")
    return fields


def format_as_email(
    data: Dict[str, Any],
    fields: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> str:
    """Plain-text email body; `fields` (from generate_email_fields) overrides subject and actions."""
    fields = fields or {}
    strategy = data["strategy"]
    short_term = data["priority"]["shortTerm"]
    semantic = data["priority"]["semanticHijack"]

    subject = fields.get("subject") or f"SEO Analysis - {data['bestQuery']} [{strategy}]"

    lines = [
        f"Subject: {subject}",
        "---",
        "",
        "Hi Team,",
        "",
        "Here's the SEO optimization analysis for the following page:",
        f"URL: {data['page']}",
        "",
        "## Executive Summary",
        f"Target Keyword: {data['bestQuery']}",
        f"Recommended Strategy: {strategy}",
    ]
    key_opportunity = fields.get("keyOpportunity") or data.get("bestOpportunity")
    if key_opportunity:
        lines.append(f"Key Opportunity: {key_opportunity}")
    if fields.get("strategyInsight"):
        lines.append(f"Why This Works: {fields['strategyInsight']}")
    lines.append("")

    actions = fields.get("topActions") or short_term
    if actions:
        lines.append("## Immediate Actions")
        if fields.get("immediateWin"):
            lines.extend([f"🎯 **Quick Win**: {fields['immediateWin']}", ""])
        lines.append("These changes must be implemented for successful optimization:")
        lines.append(_numbered(actions))
        lines.append("")

    if semantic:
        lines.append("## Optional Enhancements")
        lines.append("Additional optimizations if resources permit:")
        lines.append(_numbered(semantic))
        lines.append("")

    execution = data["executionList"]
    if execution and len(execution) != len(short_term):
        lines.extend(["## 📝 Execution Items", "Step-by-step implementation guide:", ""])
        lines.append(_numbered(execution))
        lines.append("")

    lines.append("## Strategy Details")
    lines.append(f"**Approach: {strategy}**")
    if data.get("titleSuggestion"):
        label = "Hijacking Statement" if strategy == REPOST else "New Article Focus"
        lines.extend(["", f'{label}: "{data["titleSuggestion"]}"'])
    if data.get("newPostTopic"):
        lines.append(f"Target Type: {data['newPostTopic']}")

    lines.extend(
        [
            "",
            "---",
            "",
            "Best regards,",
            "RepostLens SEO Analysis Tool",
            "",
            f"Generated: {_taipei_now(now)}",
        ]
    )
    return "\n".join(lines)


def split_sections(analysis: str) -> Dict[str, str]:
    """Route-level split of the analysis into the panels the UI shows."""

    def get(title: str) -> str:
        match = re.search(rf"## {re.escape(title)}[\s\S]*?(?=\n## |$)", analysis or "", re.I)
        return match.group(0) if match else ""

    return {
        "quickWins": get("Search Characteristic Analysis"),
        "paragraphAdditions": get("Core Hijacking Strategy"),
        "structuralChanges": get("Implementation Priority"),
        "rawAnalysis": analysis,
    }
