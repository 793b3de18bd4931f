"""
HTML email report for one analysed page: strategy headline, keyword
lists, context-vector suggestions and the suggested outline.
"""

import math
import re
from datetime import date
from html import escape
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from bs4 import BeautifulSoup

from repostlens.services.analysis_extractor import NEW_POST, extract_analysis_data

LOGO_DATA_URI = "data:image/svg+xml;utf8," + quote(
    '<svg xmlns="http://www.w3.org/2000/svg" width="140" height="36" viewBox="0 0 140 36">'
    '<rect width="140" height="36" rx="8" fill="#1F2937"/>'
    '<text x="20" y="23" fill="#F9FAFB" font-family="Helvetica, Arial, sans-serif" '
    'font-size="16" font-weight="700">RepostLens</text></svg>',
    safe="",
)

TOP_RANK_KEYS = ("current_rank_1", "current_rank_2", "current_rank_3")
RELATED_RANK_KEYS = tuple(f"current_rank_{i}" for i in range(4, 11))

SEPARATOR_RE = re.compile(r"^\|?\s*:?-+:?\s*(\|\s*:?-+:?\s*)*\|?$")
BR_RE = re.compile(r"<br\s*/?>(?=\s|$)", re.IGNORECASE)
BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
BULLET_RE = re.compile(r"^[-*]\s+")

_NUM = r"([0-9]+(?:\.[0-9]+)?)"


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def to_float(value: Any) -> Optional[float]:
    """Numbers pass through, strings lose everything but digits, dot and minus."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        stripped = re.sub(r"[^\d.-]", "", value)
        try:
            return float(stripped) if stripped else 0.0
        except ValueError:
            return None
    return None


def _extract_number(pattern: str, line: str) -> Optional[float]:
    match = re.search(pattern, line, re.IGNORECASE)
    if not match:
        return None
    try:
        return float(match.group(1).replace(",", ""))
    except ValueError:
        return None


def parse_rank_keyword_line(raw: Any) -> Optional[Dict[str, Any]]:
    """'keyword(rank: 4, clicks: 12, impressions: 300)' -> keyword entry."""
    line = _clean(raw)
    if not line:
        return None
    keyword = line[: line.index("(")].strip() if "(" in line else line
    if not keyword:
        return None

    return {
        "keyword": keyword,
        "rank": _extract_number(rf"rank\s*:\s*{_NUM}", line),
        "clicks": _extract_number(rf"clicks?\s*:\s*{_NUM}", line),
        "impressions": _extract_number(rf"impressions?\s*:\s*{_NUM}", line)
        or _extract_number(rf"imps?\s*:\s*{_NUM}", line),
        "searchVolume": _extract_number(rf"SV\s*:\s*{_NUM}", line)
        or _extract_number(rf"search\s*volume\s*:\s*{_NUM}", line),
        "raw": line,
    }


def _entries_from_search(data: Dict[str, Any]) -> Dict[str, Any]:
    def parse(keys):
        entries = (parse_rank_keyword_line(data.get(k)) for k in keys)
        return [e for e in entries if e]

    return {
        "topRankKeywords": parse(TOP_RANK_KEYS),
        "rankKeywords": parse(RELATED_RANK_KEYS),
        "bestQueryPosition": to_float(data.get("best_query_position")),
        "bestQueryClicks": to_float(data.get("best_query_clicks")),
    }


def normalize_api_analysis(api_analysis: Any, search_data: Any) -> Dict[str, Any]:
    """
    Prefer an explicit keyword payload; otherwise rebuild the keyword lists
    from a raw search row.
    """
    if (
        isinstance(api_analysis, dict)
        and isinstance(api_analysis.get("topRankKeywords"), list)
        and isinstance(api_analysis.get("rankKeywords"), list)
    ):
        return {
            "topRankKeywords": api_analysis["topRankKeywords"],
            "rankKeywords": api_analysis["rankKeywords"],
            "bestQueryPosition": to_float(api_analysis.get("bestQueryPosition")),
            "bestQueryClicks": to_float(api_analysis.get("bestQueryClicks")),
        }
    if isinstance(search_data, dict):
        return _entries_from_search(search_data)
    return {"topRankKeywords": [], "rankKeywords": [], "bestQueryPosition": None, "bestQueryClicks": None}


def format_number(value: Any) -> Optional[str]:
    numeric = to_float(value)
    if numeric is None:
        return None
    return f"{math.floor(numeric + 0.5):,}"


def format_keyword_with_metrics(keyword: str, stats: Dict[str, Any]) -> str:
    metrics = []
    for label, key in (("排名", "rank"), ("點擊", "clicks"), ("曝光", "impressions"), ("SV", "searchVolume")):
        formatted = format_number(stats.get(key))
        if formatted is not None:
            metrics.append(f"{label} {formatted}")
    return f"{keyword}（{' / '.join(metrics)}）" if metrics else keyword


def _first_present(*values):
    for v in values:
        if v is not None:
            return v
    return None


def collect_keyword_entries(best_query: str, api_analysis: Dict[str, Any]):
    """Main and related keyword lines, deduplicated case-insensitively across both lists."""
    top_keywords = [k for k in api_analysis.get("topRankKeywords") or [] if isinstance(k, dict)]
    related_source = [k for k in api_analysis.get("rankKeywords") or [] if isinstance(k, dict)]

    seen = set()
    top_entries: List[str] = []

    def push(keyword: str, stats: Dict[str, Any]):
        key = keyword.strip().lower()
        if not key or key in seen:
            return
        seen.add(key)
        top_entries.append(format_keyword_with_metrics(keyword, stats))

    if best_query:
        best = next(
            (k for k in top_keywords if str(k.get("keyword") or "").lower() == best_query.lower()),
            {},
        )
        push(best_query, {
            "rank": _first_present(best.get("rank"), api_analysis.get("bestQueryPosition")),
            "clicks": _first_present(best.get("clicks"), api_analysis.get("bestQueryClicks")),
            "impressions": best.get("impressions"),
            "searchVolume": best.get("searchVolume"),
        })

    for item in top_keywords:
        if item.get("keyword"):
            push(str(item["keyword"]), item)

    related_entries: List[str] = []
    for item in related_source:
        keyword = str(item.get("keyword") or "").strip()
        if not keyword or keyword.lower() in seen:
            continue
        seen.add(keyword.lower())
        related_entries.append(format_keyword_with_metrics(keyword, item))

    return top_entries, related_entries


def render_keyword_list(items: List[str]) -> str:
    if not items:
        return '<p style="margin:0;color:#667085;font-size:13px;">無</p>'
    lis = "".join(f'<li style="margin-bottom:4px;">{escape(item)}</li>' for item in items)
    return f'<ul style="margin:0;padding-left:18px;color:#101828;font-size:13px;">{lis}</ul>'


def split_markdown_row(row: str) -> List[str]:
    cells = [c.strip() for c in row.split("|")]
    if cells and cells[0] == "":
        cells.pop(0)
    if cells and cells[-1] == "":
        cells.pop()
    return cells


def markdown_table_to_html(markdown: str) -> Optional[str]:
    lines = [l.strip() for l in re.split(r"\r?\n", markdown) if l.strip()]
    if len(lines) < 2 or "|" not in lines[0]:
        return None
    sep_index = next((i for i, l in enumerate(lines) if i > 0 and SEPARATOR_RE.match(l)), -1)
    if sep_index == -1:
        return None
    header_cells = split_markdown_row(lines[0])
    if not header_cells:
        return None

    head = "".join(
        '<th style="background:#F9FAFB;padding:10px 12px;border:1px solid #E4E7EC;'
        f'text-align:left;font-size:13px;color:#101828;">{escape(c)}</th>'
        for c in header_cells
    )
    body = "".join(
        "<tr>"
        + "".join(
            '<td style="padding:8px 12px;border:1px solid #E4E7EC;font-size:13px;'
            f'color:#475467;">{escape(c)}</td>'
            for c in split_markdown_row(line)
        )
        + "</tr>"
        for line in lines[sep_index + 1:]
        if "|" in line
    )
    return f'<table style="width:100%;border-collapse:collapse;"><tr>{head}</tr>{body}</table>'


def _format_inline(text: str) -> str:
    working = escape(BR_RE.sub("__BR__", text))
    working = BOLD_RE.sub(r"<strong>\1</strong>", working)
    return working.replace("__BR__", "<br />")


def render_context_vector(content: str) -> str:
    trimmed = (content or "").strip()
    if not trimmed:
        return '<p style="margin:0;color:#667085;font-size:13px;">目前沒有額外建議。</p>'
    if "|" in trimmed:
        table = markdown_table_to_html(trimmed)
        if table:
            return f'<div style="overflow-x:auto;">{table}</div>'

    parts: List[str] = []
    bullets: List[str] = []

    def flush():
        if bullets:
            lis = "".join(f'<li style="margin-bottom:6px;">{b}</li>' for b in bullets)
            parts.append(f'<ul style="margin:0;padding-left:18px;color:#101828;font-size:13px;">{lis}</ul>')
            bullets.clear()

    for raw_line in trimmed.replace("\r\n", "\n").split("\n"):
        line = raw_line.strip()
        if not line:
            flush()
        elif BULLET_RE.match(line):
            bullets.append(_format_inline(BULLET_RE.sub("", line, count=1)))
        else:
            flush()
            parts.append(f'<p style="margin:0 0 10px;color:#101828;font-size:13px;">{_format_inline(line)}</p>')
    flush()
    return "".join(parts)


def render_outline(outline: str) -> str:
    trimmed = (outline or "").strip()
    if not trimmed:
        return ""
    return (
        '<pre style="margin:0;font-size:13px;color:#475467;white-space:pre-wrap;'
        "font-family:'Segoe UI','Helvetica Neue',Arial,sans-serif;line-height:1.6;\">"
        f"{escape(trimmed)}</pre>"
    )


def build_email_html(
    page_url: str,
    best_query: str,
    analysis_text: str,
    api_analysis: Dict[str, Any],
    context_vector: str = "",
    outline: str = "",
    today: Optional[date] = None,
) -> str:
    today = today or date.today()
    extracted = extract_analysis_data(analysis_text, page_url, best_query)
    top_entries, related_entries = collect_keyword_entries(best_query, api_analysis)

    hero = f"關鍵字優化提案：{escape(best_query)}" if best_query else "關鍵字優化提案"
    strategy_label = "建議新增文章" if extracted["strategy"] == NEW_POST else "建議優化現有文章"
    opportunity = extracted.get("bestOpportunity")
    opportunity_html = (
        f'<p style="margin:0;color:#101828;font-size:14px;">核心機會：{escape(opportunity)}</p>'
        if opportunity else ""
    )

    outline_html = render_outline(outline)
    outline_section = (
        '<div style="margin-top:20px;padding-top:16px;border-top:1px solid #E4E7EC;">'
        '<h3 style="margin:0 0 12px;font-size:16px;color:#1D4ED8;">建議文章大綱</h3>'
        f"{outline_html}</div>"
        if outline_html else ""
    )
    page = escape(page_url)

    return f"""
<table align="center" cellpadding="0" cellspacing="0" style="width:640px;max-width:640px;background:#ffffff;border:1px solid #EAECF0;border-radius:16px;overflow:hidden;font-family:'Segoe UI','Helvetica Neue',Arial,sans-serif;color:#101828;">
  <tr>
    <td style="padding:24px;background:#101828;">
      <table width="100%" cellpadding="0" cellspacing="0">
        <tr>
          <td><img src="{LOGO_DATA_URI}" alt="PressLogic RepostLens" style="height:28px;display:block;" /></td>
          <td style="text-align:right;color:#D0D5DD;font-size:12px;">{today.year}/{today.month}/{today.day}</td>
        </tr>
      </table>
    </td>
  </tr>
  <tr>
    <td style="padding:28px 32px 12px 32px;">
      <h1 style="margin:0 0 12px;font-size:24px;color:#101828;">{hero}</h1>
      <p style="margin:0 0 8px;color:#475467;font-size:14px;">頁面：<a href="{page}" style="color:#1D4ED8;text-decoration:none;">{page}</a></p>
      <p style="margin:0 0 8px;color:#475467;font-size:14px;">策略方向：<strong>{escape(strategy_label)}</strong></p>
      {opportunity_html}
    </td>
  </tr>
  <tr>
    <td style="padding:16px 32px 0 32px;">
      <table width="100%" cellpadding="0" cellspacing="0" style="margin:0 0 24px;">
        <tr>
          <td valign="top" style="width:50%;padding-right:12px;">
            <p style="margin:0 0 8px;font-weight:600;color:#101828;">主要關鍵字</p>
            {render_keyword_list(top_entries)}
          </td>
          <td valign="top" style="width:50%;padding-left:12px;">
            <p style="margin:0 0 8px;font-weight:600;color:#101828;">相關關鍵字</p>
            {render_keyword_list(related_entries)}
          </td>
        </tr>
      </table>
    </td>
  </tr>
  <tr>
    <td style="padding:0 32px 32px 32px;">
      <div style="background:#F9FAFB;border:1px solid #EAECF0;border-radius:12px;padding:20px;">
        <h2 style="margin:0 0 12px;font-size:18px;color:#101828;">內容調整建議（Context Vector）</h2>
        {render_context_vector(context_vector)}
        {outline_section}
      </div>
    </td>
  </tr>
  <tr>
    <td style="padding:16px 32px;background:#F1F5F9;color:#98A2B3;font-size:12px;text-align:center;">© {today.year} PressLogic · RepostLens</td>
  </tr>
</table>
""".strip()


def html_to_text(html: str) -> str:
    """Plain-text version of the email; images are dropped."""
    soup = BeautifulSoup(html, "lxml")
    for img in soup.find_all("img"):
        img.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for cell in soup.find_all(["td", "th"]):
        cell.append(" ")
    lines = (line.strip() for line in soup.get_text("\n").splitlines())
    text = "\n".join(line for line in lines if line)
    return text.strip()
