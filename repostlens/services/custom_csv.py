"""
Turns an SEO-tool organic keyword export (one row per keyword) into page
rows shaped like the /api/search/list output, so a CSV can stand in for
Search Console data.
"""

import csv
import io
import math
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional

INT_PREFIX_RE = re.compile(r"^[+-]?\d+")
FLOAT_PREFIX_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")

REGION_ALIASES = {
    "hk": ("hk", "hong kong", "hongkong"),
    "tw": ("tw", "taiwan"),
    "sg": ("sg", "singapore"),
    "my": ("my", "malaysia"),
    "cn": ("cn", "china", "china mainland", "mainland china"),
}
URL_REGIONS = ("hk", "tw", "sg", "my", "cn")


def parse_csv_rows(text: str) -> List[Dict[str, str]]:
    reader = csv.reader(io.StringIO(text or ""))
    try:
        headers = [h.strip() for h in next(reader)]
    except StopIteration:
        return []
    if not any(headers):
        return []

    rows = []
    for values in reader:
        if not any(v.strip() for v in values):
            continue
        values = [v.strip() for v in values]
        rows.append({h: (values[i] if i < len(values) else "") for i, h in enumerate(headers)})
    return rows


def to_int(value: Any) -> int:
    match = INT_PREFIX_RE.match(re.sub(r"[ ,]", "", str(value if value is not None else "")))
    return int(match.group(0)) if match else 0


def to_float(value: Any) -> float:
    match = FLOAT_PREFIX_RE.match(re.sub(r"[ ,]", "", str(value if value is not None else "")))
    return float(match.group(0)) if match else 0.0


def infer_region_from_url(url: str) -> Optional[str]:
    lower = url.lower()
    for region in URL_REGIONS:
        if f"/{region}/" in lower:
            return region
    return None


def normalize_region_code(value: Optional[str]) -> Optional[str]:
    v = (value or "").strip().lower()
    if not v:
        return None
    for code, aliases in REGION_ALIASES.items():
        if v in aliases:
            return code
    return None


def _traffic(row):
    return to_int(row.get("Current organic traffic"))


def _position(row):
    return to_float(row.get("Current position"))


def _bucket_entry(row: Dict[str, str]) -> Dict[str, Any]:
    keyword = (row.get("Keyword") or "(N/A)").strip()
    clicks = _traffic(row)
    volume = to_int(row.get("Volume"))
    position = _position(row)
    return {
        "keyword": keyword,
        "clicks": clicks,
        "volume": volume,
        "position": position,
        "entry": f"{keyword}(click: {clicks}, impression: {volume}, position: {position:.1f})",
    }


def _ratio(part: int, total: int) -> Optional[str]:
    return f"{part / total * 100:.1f}%" if total else None


def summarize_page(url: str, keywords: List[Dict[str, str]]) -> Dict[str, Any]:
    top = sorted((k for k in keywords if 1 <= _position(k) <= 3), key=_traffic, reverse=True)
    best = top[0] if top else max(keywords, key=_traffic)
    prev_best = max(keywords, key=lambda k: to_int(k.get("Previous organic traffic")))

    rank_1to10 = [k for k in keywords if 1 <= _position(k) <= 10]
    rank_4to10 = [k for k in keywords if 4 <= _position(k) <= 10]

    groups: Dict[int, List[str]] = {}
    gt10: List[str] = []
    items_1to10: List[str] = []
    seen = set()
    for row in keywords:
        e = _bucket_entry(row)
        if 1 <= e["position"] <= 10:
            groups.setdefault(math.floor(e["position"] + 0.5), []).append(e["entry"])
            if e["keyword"] not in seen:
                seen.add(e["keyword"])
                items_1to10.append(
                    f"{e['keyword']} (SV: {e['volume'] or 0}, Clicks: {e['clicks']}, Pos: {e['position']:.1f})"
                )
        elif e["position"] > 10:
            gt10.append(e["entry"])

    regions = []
    for k in keywords:
        code = normalize_region_code(k.get("Country") or k.get("Location"))
        if code and code not in regions:
            regions.append(code)
    url_region = infer_region_from_url(url)
    if url_region and url_region not in regions:
        regions.append(url_region)
    country_raw = keywords[0].get("Country") or keywords[0].get("Location") or ""
    country_region = normalize_region_code(country_raw)

    row: Dict[str, Any] = {
        "page": url,
        "country": country_raw or None,
        "regionCode": country_region or (regions[0] if regions else None),
        "regions": regions or None,
        "best_query": best.get("Keyword") or None,
        "best_query_clicks": _traffic(best),
        "best_query_position": _position(best),
        "best_query_volume": to_int(best.get("Volume")),
        "prev_best_query": prev_best.get("Keyword") or None,
        "prev_best_clicks": to_int(prev_best.get("Previous organic traffic")),
        "prev_best_position": to_float(prev_best.get("Previous position")),
        "prev_main_keyword": prev_best.get("Keyword") or None,
        "prev_keyword_rank": to_float(prev_best.get("Previous position")),
        "prev_keyword_traffic": to_int(prev_best.get("Previous organic traffic")),
        "total_clicks": sum(_traffic(k) for k in keywords),
        "keywords_1to10_count": len(rank_1to10),
        "keywords_4to10_count": len(rank_4to10),
        "total_keywords": len(keywords),
        "keywords_1to10_ratio": _ratio(len(rank_1to10), len(keywords)),
        "keywords_4to10_ratio": _ratio(len(rank_4to10), len(keywords)),
        "potential_traffic": sum(_traffic(k) for k in rank_4to10),
    }
    for i in range(1, 11):
        joined = ", ".join(groups.get(i, [])) or None
        row[f"current_rank_{i}"] = joined
        row[f"rank_{i}"] = joined
    row["current_rank_gt10"] = ", ".join(gt10) or None
    row["rank_items_1to10"] = items_1to10
    return row


def process_rows(rows: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    """Group keyword rows by Current URL and rank pages by potential traffic."""
    by_url: "OrderedDict[str, List[Dict[str, str]]]" = OrderedDict()
    for row in rows:
        url = row.get("Current URL") or row.get("Current URL inside") or ""
        if url:
            by_url.setdefault(url, []).append(row)

    pages = [summarize_page(url, keywords) for url, keywords in by_url.items()]
    pages.sort(key=lambda p: p["potential_traffic"] or 0, reverse=True)
    return pages
