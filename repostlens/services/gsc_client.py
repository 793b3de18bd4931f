import logging
import re
from typing import Any, Dict, List, Optional

from repostlens.config import TOKENIZE_API_URL, require_gsc_endpoint
from repostlens.services.gsc_queries import (
    MIN_TOKEN_LENGTH,
    build_internal_links_sql,
    build_list_sql,
    build_page_like_sql,
    build_page_sql,
    build_url_variants,
    escape_like_token,
    normalize_rows,
    sanitize_tokens,
    to_article_id_prefix,
)
from repostlens.services.upstream import (
    NGROK_HEADERS,
    UpstreamError,
    get_json,
    post_json,
)

log = logging.getLogger(__name__)


async def run_query(site: str, sql: str, *, error_message: Optional[str] = None) -> Any:
    url = f"{require_gsc_endpoint()}/api/query"
    return await post_json(
        url,
        {"site": site, "sql": sql},
        headers=NGROK_HEADERS,
        error_message=error_message,
    )


async def list_sites() -> Any:
    data = await get_json(f"{require_gsc_endpoint()}/api/sites", headers=NGROK_HEADERS)
    if isinstance(data, dict):
        for key in ("data", "results", "rows", "sites"):
            if data.get(key):
                return data[key]
    return data


async def search_list(site: str) -> List[Dict[str, Any]]:
    data = await run_query(site, build_list_sql())
    return normalize_rows(data)


async def query_page(
    site: str,
    page: str,
    start_date: str,
    period_days: int,
) -> List[Dict[str, Any]]:
    """
    Rows for one page. Tries each URL spelling, then an article-id LIKE
    match, and returns [] when nothing matched.
    """
    try:
        for variant in build_url_variants(page):
            rows = normalize_rows(
                await run_query(site, build_page_sql(variant, start_date, period_days))
            )
            if rows:
                return rows
    except UpstreamError as e:
        log.error("URL variant query failed for %s: %s", page, e)

    prefix = to_article_id_prefix(page)
    if prefix:
        data = await run_query(
            site,
            build_page_like_sql(prefix, start_date, period_days),
            error_message="Upstream error (LIKE query)",
        )
        rows = normalize_rows(data)
        if rows:
            return rows

    return []


async def tokenize_keyword(text: str) -> List[str]:
    """NLP tokenizer; any failure yields no tokens."""
    try:
        data = await post_json(
            TOKENIZE_API_URL,
            {"text": text, "min_length": MIN_TOKEN_LENGTH, "stop_words": []},
            headers=NGROK_HEADERS,
            timeout=20,
        )
    except Exception as e:
        log.warning("tokenize failed for %r: %s", text, e)
        return []
    tokens = (data.get("data") or {}).get("tokens") if isinstance(data, dict) else None
    return sanitize_tokens(tokens or [])


def _to_number(value: Any) -> Optional[float]:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if n != n or n in (float("inf"), float("-inf")):
        return None
    return int(n) if n.is_integer() else n


def map_internal_link_row(row: Dict[str, Any]) -> Dict[str, Any]:
    def first(*keys):
        for k in keys:
            if row.get(k) is not None:
                return row[k]
        return None

    return {
        "page": str(row.get("page") or ""),
        "clicks": _to_number(first("total_clicks", "clicks")),
        "impressions": _to_number(first("total_impressions", "impressions")),
        "position": _to_number(first("avg_position", "position")),
        "topQuery": str(row["top_query"]) if row.get("top_query") else None,
        "topClicks": _to_number(row.get("top_clicks")),
        "matchedQueries": str(row["matched_queries"]) if row.get("matched_queries") else None,
    }


async def find_internal_links(
    site: str,
    keyword: str,
    *,
    start_date: Optional[str],
    period_days: int,
    limit: int,
) -> Dict[str, Any]:
    tokens = await tokenize_keyword(keyword)
    if not tokens:
        tokens = sanitize_tokens(
            p for p in re.split(r"\s+", keyword) if len(p.strip()) >= MIN_TOKEN_LENGTH
        )
    sql = build_internal_links_sql(
        tokens or [escape_like_token(keyword)],
        start_date=start_date,
        period_days=period_days,
        limit=limit,
    )
    data = await run_query(site, sql, error_message="Upstream error")
    rows = [map_internal_link_row(r) for r in normalize_rows(data)]

    return {
        "site": site,
        "keyword": keyword,
        "tokens": tokens,
        "limit": limit,
        "periodDays": period_days,
        "startDate": start_date,
        "results": rows[:limit],
        "sql": sql,
    }
