"""
SERP insights for a handful of queries: who ranks, how strong those
domains are, and what kind of sites they are.

The upstream search service answers
    {success, query, count, results: [...], merged_results?: [...]}
where every result carries title/url/domain plus domainAuthority,
backlinks and backdomains as display strings ("91", "3.7M", "N/A").
"""

import asyncio
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote, urlparse

import httpx

from repostlens import config
from repostlens.services.upstream import NGROK_HEADERS, UpstreamError, get_json

log = logging.getLogger(__name__)

SITE_TYPES = ("gov", "edu", "news", "blog", "retail", "forum", "media", "other")
MAX_QUERIES = 3
TOP_PAGES = 5

HUMAN_NUMBER_RE = re.compile(r"^(\d+(?:\.\d+)?)([kKmMbB])?\+?$")
NEWS_RE = re.compile(r"news|nytimes|cnn|bbc|bloomberg|reuters|forbes|wsj|guardian")
BLOG_RE = re.compile(r"blog\.|/blog/")
RETAIL_RE = re.compile(r"shop|store|retail|amazon|ebay|shopee|etsy")
FORUM_RE = re.compile(r"reddit|quora|stack(over|)flow|forum|discuss|community")
MEDIA_RE = re.compile(r"youtube|vimeo|tiktok|medium|substack")


def _strip_to_number(s: str) -> Optional[float]:
    digits = re.sub(r"[^\d.\-]", "", s)
    if not digits:
        return 0.0
    try:
        return float(digits)
    except ValueError:
        return None


def to_number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if math.isfinite(value) else None
    s = str(value if value is not None else "").strip()
    if not s or s.lower() == "n/a":
        return None
    return _strip_to_number(s)


def parse_human_number(value: Any) -> Optional[float]:
    """'3.7M' -> 3700000, '146.5K' -> 146500, '20+' -> 20; B is treated like M."""
    if not value:
        return None
    s = str(value).strip()
    if not s or s.lower() == "n/a":
        return None
    match = HUMAN_NUMBER_RE.match(s)
    if not match:
        return _strip_to_number(s)
    base = float(match.group(1))
    suffix = (match.group(2) or "").lower()
    mult = 1_000 if suffix == "k" else 1_000_000 if suffix in ("m", "b") else 1
    return float(math.floor(base * mult + 0.5))


def extract_hostname(url_or_domain: Optional[str]) -> str:
    if not url_or_domain or url_or_domain.lower() == "n/a":
        return ""
    raw = str(url_or_domain).strip()
    try:
        host = urlparse(raw if raw.startswith("http") else f"https://{raw}").hostname
    except ValueError:
        host = None
    if host:
        return host.lower()
    return re.sub(r"/.*$", "", re.sub(r"^https?://", "", raw.lower()))


def classify_site_type(url_or_domain: Optional[str]) -> str:
    host = extract_hostname(url_or_domain)
    if not host:
        return "other"
    if host.endswith(".gov") or ".gov." in host:
        return "gov"
    if host.endswith(".edu") or ".edu." in host:
        return "edu"
    if NEWS_RE.search(host):
        return "news"
    if BLOG_RE.search(str(url_or_domain or "")):
        return "blog"
    if RETAIL_RE.search(host):
        return "retail"
    if FORUM_RE.search(host):
        return "forum"
    if MEDIA_RE.search(host):
        return "media"
    return "other"


def page_score(item: Dict[str, Any], max_offset: float) -> float:
    """Domain authority, log-scaled backlinks and an early-position bonus."""
    da = item.get("domainAuthority") or 0
    backlinks = item.get("backlinks") or 0
    offset = item["topOffset"] if item.get("topOffset") is not None else max_offset
    offset_boost = (max_offset - offset) / max_offset if max_offset > 0 else 0
    return da + math.log10(backlinks + 1) * 10 + offset_boost * 20


def average(values: Iterable[Optional[float]]) -> Optional[float]:
    nums = [v for v in values if isinstance(v, (int, float)) and math.isfinite(v)]
    if not nums:
        return None
    return round(sum(nums) / len(nums), 2)


def _empty_site_types() -> Dict[str, int]:
    return {t: 0 for t in SITE_TYPES}


async def fetch_serp(query: str) -> Optional[Dict[str, Any]]:
    """Upstream SERP for one query; merged_results win over results when present."""
    try:
        data = await get_json(config.search_endpoint() + quote(query, safe=""), headers=NGROK_HEADERS)
    except (UpstreamError, httpx.HTTPError) as e:
        log.warning("SERP lookup failed for %r: %s", query, e)
        return None
    if not isinstance(data, dict) or data.get("success") is not True:
        return None
    merged = data.get("merged_results")
    if isinstance(merged, list) and merged:
        results = merged
    else:
        results = data.get("results") if isinstance(data.get("results"), list) else []
    return {**data, "results": results}


def enrich_result(r: Dict[str, Any], max_offset: float) -> Dict[str, Any]:
    url = str(r["url"]) if r.get("url") and r.get("url") != "N/A" else ""
    domain = extract_hostname(r.get("domain") or url)
    title = r.get("title")
    item = {
        "title": str(title) if title and title != "N/A" else (url or domain or "N/A"),
        "url": url,
        "domain": domain,
        "topOffset": to_number_or_none(r.get("topOffset")),
        "domainAuthority": to_number_or_none(r.get("domainAuthority")),
        "backlinks": parse_human_number(r.get("backlinks")),
        "backdomains": parse_human_number(r.get("backdomains")),
        "siteType": classify_site_type(url or domain),
    }
    item["score"] = page_score(item, max_offset)
    return item


def build_query_insight(query: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    items = [r for r in (data or {}).get("results") or [] if isinstance(r, dict)]
    max_offset = max([to_number_or_none(r.get("topOffset")) or 0 for r in items] + [0])
    enriched = [enrich_result(r, max_offset or 1) for r in items]

    top_pages = sorted(
        (x for x in enriched if x["url"] or x["domain"]),
        key=lambda x: x["score"],
        reverse=True,
    )[:TOP_PAGES]

    site_types = _empty_site_types()
    for x in enriched:
        site_types[x["siteType"]] += 1

    count = (data or {}).get("count")
    return {
        "query": query,
        "count": count if count is not None else len(enriched),
        "avgDomainAuthority": average(x["domainAuthority"] for x in enriched),
        "siteTypes": site_types,
        "topPages": top_pages,
        "bestPage": top_pages[0] if top_pages else None,
    }


def summarize_insights(picked: List[str], insights: List[Dict[str, Any]]) -> Dict[str, Any]:
    overall_types = _empty_site_types()
    for insight in insights:
        for t in SITE_TYPES:
            overall_types[t] += insight["siteTypes"].get(t, 0)
    all_top = [p for i in insights for p in i["topPages"]]
    best = max(all_top, key=lambda p: p["score"]) if all_top else None
    return {
        "success": True,
        "pickedQueries": picked,
        "insights": insights,
        "overall": {
            "avgDomainAuthority": average(i["avgDomainAuthority"] for i in insights),
            "siteTypes": overall_types,
            "bestPage": best,
        },
    }


async def _insights_for(picked: List[str]) -> Dict[str, Any]:
    responses = await asyncio.gather(*(fetch_serp(q) for q in picked))
    insights = [build_query_insight(q, data) for q, data in zip(picked, responses)]
    return summarize_insights(picked, insights)


async def fetch_content_explorer_for_queries(queries: List[Any]) -> Dict[str, Any]:
    picked = [str(q) for q in queries or [] if q is not None and str(q)][:MAX_QUERIES]
    return await _insights_for(picked)


def pick_top3_queries_by_sv(keywords: List[Dict[str, Any]]) -> List[str]:
    candidates = [
        k for k in keywords or []
        if isinstance(k, dict)
        and isinstance(k.get("searchVolume"), (int, float))
        and k["searchVolume"] > 0
        and k.get("text")
    ]
    candidates.sort(key=lambda k: k["searchVolume"], reverse=True)
    return [str(k["text"]) for k in candidates[:MAX_QUERIES]]


async def fetch_search_traffic_insights(keywords: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Same insights, for the three keywords with the highest search volume."""
    return await _insights_for(pick_top3_queries_by_sv(keywords))
