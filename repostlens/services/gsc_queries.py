"""
SQL text builders for the Search Console query service.

Nothing here talks to the network. Each builder returns a Postgres statement
that the remote service runs after substituting its table placeholder
(`{site_hourly}` for the hourly fact table, `{site}` for the daily one).
"""

import math
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

# Rank buckets 1..10 plus 11 meaning "worse than 10"
RANK_BUCKETS = list(range(1, 11))
GT10_BUCKET = 11

MIN_TOKEN_LENGTH = 2
MAX_TOKENS = 12

DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
ARTICLE_PREFIX_RE = re.compile(r"^(.*?/article/)(\d+)(?:/|$)", re.IGNORECASE)


def escape_sql_literal(value: str) -> str:
    return (value or "").replace("'", "''")


def normalize_rows(data: Any) -> List[Dict[str, Any]]:
    """
    The query service answers with a bare list or wraps it in
    {data|results|rows: [...]}. Anything else counts as no rows.
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("data", "results", "rows"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


def build_url_variants(raw: str) -> List[str]:
    """
    Search Console stores whatever URL form Google saw, so try the raw URL
    first, then every protocol/host/trailing-slash combination of it.
    """
    try:
        parts = urlsplit(raw)
    except ValueError:
        return [raw]
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return [raw]

    protocols = ["http", "https"] if parts.scheme == "http" else ["https", "http"]
    host = parts.hostname
    if host.startswith("www."):
        hosts = [host, host[len("www."):]]
    else:
        hosts = [host, f"www.{host}"]

    path = parts.path.rstrip("/") if parts.path != "/" else ""
    paths = [path, f"{path}/"] if path else ["/"]
    search = f"?{parts.query}" if parts.query else ""

    variants = [raw]
    for proto in protocols:
        for h in hosts:
            for p in paths:
                candidate = f"{proto}://{h}{p}{search}"
                if candidate not in variants:
                    variants.append(candidate)
    return variants


def to_article_id_prefix(raw: str) -> Optional[str]:
    """https://host/hk/article/123/slug -> https://host/hk/article/123"""
    try:
        parts = urlsplit(raw)
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    match = ARTICLE_PREFIX_RE.match(parts.path)
    if not match:
        return None
    return f"{parts.scheme}://{parts.hostname}{match.group(1)}{match.group(2)}"


def _pivot_columns(source: str, bucket_col: str, alias_prefix: str) -> str:
    cols = [
        f"MAX(CASE WHEN {bucket_col} = {b} THEN keywords END) AS {alias_prefix}{b}"
        for b in RANK_BUCKETS
    ]
    cols.append(
        f"MAX(CASE WHEN {bucket_col} = {GT10_BUCKET} THEN keywords END) AS {alias_prefix}gt10"
    )
    return f"SELECT page,\n        " + ",\n        ".join(cols) + f"\n    FROM {source} GROUP BY page"


def _select_list(table_alias: str, alias_prefix: str) -> str:
    names = [f"{alias_prefix}{b}" for b in RANK_BUCKETS] + [f"{alias_prefix}gt10"]
    return ", ".join(f"{table_alias}.{n}" for n in names)


def _bucket_case(avg_expr: str) -> str:
    return (
        f"CASE WHEN {avg_expr} BETWEEN 1 AND 10 THEN FLOOR({avg_expr})::INT "
        f"WHEN {avg_expr} > 10 THEN {GT10_BUCKET} ELSE NULL END"
    )


# Shared tail of every potential-traffic formula: pages whose best query is
# already in the top 4 have less headroom.
def _weight_expr(best_position: str) -> str:
    return f"(CASE WHEN {best_position} <= 4 THEN 0.7 ELSE 1.0 END)"


def _potential_expr(clicks: str, best_position: str, count_1to10: str, total: str) -> str:
    return (
        f"ROUND({clicks} * ({_weight_expr(best_position)} + "
        f"{count_1to10}::numeric / GREATEST({total}, 1) * 0.5))"
    )


def build_list_sql() -> str:
    """
    Site-wide candidate list: last 30 days against the 30 before, only pages
    first seen at least four months ago with more than 50 clicks.
    """
    cur_bucket = _bucket_case("AVG(position) FILTER (WHERE period_flag = 1)")
    prev_bucket = _bucket_case("AVG(position) FILTER (WHERE period_flag = 2)")
    return f"""
WITH date_settings AS (
    SELECT
        CURRENT_DATE - INTERVAL '30 days' AS current_period_start,
        CURRENT_DATE AS current_period_end,
        CURRENT_DATE - INTERVAL '60 days' AS previous_period_start,
        CURRENT_DATE - INTERVAL '60 days' AS total_period_start,
        CURRENT_DATE - INTERVAL '4 months' AS first_seen_threshold
),
page_first_seen AS (
    SELECT page, MIN(date::DATE) AS first_seen_date
    FROM {{site_hourly}}
    GROUP BY page
),
base_data AS (
    SELECT
        sh.page,
        REPLACE(sh.query, ' ', '') AS query,
        sh.clicks, sh.impressions, sh.position,
        CASE
            WHEN sh.date::DATE >= ds.current_period_start THEN 1
            WHEN sh.date::DATE >= ds.previous_period_start THEN 2
            ELSE 0
        END AS period_flag
    FROM {{site_hourly}} sh
    CROSS JOIN date_settings ds
    WHERE sh.date::DATE >= ds.total_period_start
      AND sh.date::DATE < ds.current_period_end
      AND sh.page NOT LIKE '%#%'
      AND sh.page IN (
          SELECT page FROM page_first_seen WHERE first_seen_date <= ds.first_seen_threshold
      )
      AND sh.page IN (
          SELECT sh2.page FROM {{site_hourly}} sh2
          CROSS JOIN date_settings ds2
          WHERE sh2.date::DATE >= ds2.total_period_start AND sh2.page NOT LIKE '%#%'
          GROUP BY sh2.page
          HAVING SUM(sh2.clicks) > 50
      )
),
aggregated_data AS (
    SELECT
        page, query,
        SUM(clicks) AS total_clicks,
        SUM(impressions) AS total_impressions,
        SUM(clicks) FILTER (WHERE period_flag = 1) AS recent_clicks,
        SUM(impressions) FILTER (WHERE period_flag = 1) AS recent_impressions,
        AVG(position) FILTER (WHERE period_flag = 1) AS recent_avg_position,
        SUM(clicks) FILTER (WHERE period_flag = 2) AS previous_clicks,
        SUM(impressions) FILTER (WHERE period_flag = 2) AS previous_impressions,
        AVG(position) FILTER (WHERE period_flag = 2) AS previous_avg_position,
        {cur_bucket} AS current_rank_bucket,
        {prev_bucket} AS previous_rank_bucket
    FROM base_data
    GROUP BY page, query
),
page_stats AS (
    SELECT
        page,
        SUM(total_clicks) AS page_total_clicks,
        SUM(total_impressions) AS page_total_impressions,
        COUNT(DISTINCT query) AS total_keywords,
        COUNT(DISTINCT query) FILTER (WHERE current_rank_bucket BETWEEN 1 AND 10 AND COALESCE(recent_clicks, 0) > 0) AS current_keywords_1to10_count,
        COUNT(DISTINCT query) FILTER (WHERE current_rank_bucket = {GT10_BUCKET} AND COALESCE(recent_clicks, 0) > 0) AS current_keywords_gt10_count
    FROM aggregated_data
    GROUP BY page
),
current_best AS (
    SELECT DISTINCT ON (page) page, query AS best_query, recent_clicks AS best_clicks, recent_avg_position AS best_position
    FROM aggregated_data WHERE COALESCE(recent_clicks, 0) > 0
    ORDER BY page, recent_clicks DESC
),
previous_best AS (
    SELECT DISTINCT ON (page) page, query AS best_query, previous_clicks AS best_clicks, previous_avg_position AS best_position
    FROM aggregated_data WHERE COALESCE(previous_clicks, 0) > 0
    ORDER BY page, previous_clicks DESC
),
current_groups AS (
    SELECT page, current_rank_bucket,
        STRING_AGG(
            query || '(click:' || recent_clicks::text || ', impression:' || recent_impressions::text
                  || ', position:' || ROUND(recent_avg_position, 1)::text || ')',
            ', ' ORDER BY recent_clicks DESC
        ) AS keywords
    FROM aggregated_data
    WHERE current_rank_bucket IS NOT NULL AND COALESCE(recent_clicks, 0) > 0
    GROUP BY page, current_rank_bucket
),
current_pivot AS (
    {_pivot_columns("current_groups", "current_rank_bucket", "current_rank_")}
),
previous_groups AS (
    SELECT page, previous_rank_bucket,
        STRING_AGG(
            query || '(click:' || previous_clicks::text || ', impression:' || previous_impressions::text
                  || ', position:' || ROUND(previous_avg_position, 1)::text || ')',
            ', ' ORDER BY previous_clicks DESC
        ) AS keywords
    FROM aggregated_data
    WHERE previous_rank_bucket IS NOT NULL AND COALESCE(previous_clicks, 0) > 0
    GROUP BY page, previous_rank_bucket
),
previous_pivot AS (
    {_pivot_columns("previous_groups", "previous_rank_bucket", "prev_rank_")}
),
zero_click AS (
    SELECT page,
        STRING_AGG(query || '(impression:' || total_impressions::text || ')', ', ' ORDER BY total_impressions DESC) AS keywords
    FROM aggregated_data
    WHERE total_clicks = 0
    GROUP BY page
)
SELECT
    ps.page,
    pfs.first_seen_date,
    ps.page_total_clicks AS total_clicks,
    ps.page_total_impressions AS total_impressions,
    ROUND(ps.page_total_clicks::numeric * 100.0 / NULLIF(ps.page_total_impressions, 0), 2) AS total_ctr,
    cb.best_query AS best_query,
    cb.best_clicks AS best_query_clicks,
    ROUND(cb.best_position, 1) AS best_query_position,
    CASE WHEN cb.best_query != pb.best_query THEN '🔄 ' ELSE '' END || pb.best_query AS prev_main_keyword,
    pb.best_clicks AS prev_keyword_traffic,
    ROUND(pb.best_position, 1) AS prev_keyword_rank,
    CASE WHEN cb.best_query = pb.best_query
         THEN (cb.best_clicks - COALESCE(pb.best_clicks, 0))::text ELSE 'N/A' END AS keyword_traffic_change,
    CASE WHEN cb.best_query = pb.best_query AND pb.best_position IS NOT NULL AND cb.best_position IS NOT NULL
         THEN ROUND(pb.best_position - cb.best_position, 1)::text ELSE 'N/A' END AS keyword_rank_change,
    ps.current_keywords_1to10_count AS keywords_1to10_count,
    ps.current_keywords_gt10_count AS keywords_gt10_count,
    ps.total_keywords,
    ROUND(ps.current_keywords_1to10_count::numeric * 100.0 / NULLIF(ps.total_keywords, 0), 1) || '%' AS keywords_1to10_ratio,
    {_potential_expr("ps.page_total_clicks", "cb.best_position", "ps.current_keywords_1to10_count", "ps.total_keywords")} AS potential_traffic,
    {_select_list("cp", "current_rank_")},
    {_select_list("pp", "prev_rank_")},
    zc.keywords AS zero_click_keywords
FROM page_stats ps
INNER JOIN current_best cb ON ps.page = cb.page
LEFT JOIN previous_best pb ON ps.page = pb.page
LEFT JOIN current_pivot cp ON ps.page = cp.page
LEFT JOIN previous_pivot pp ON ps.page = pp.page
LEFT JOIN zero_click zc ON ps.page = zc.page
LEFT JOIN page_first_seen pfs ON ps.page = pfs.page
WHERE ps.page_total_clicks > 50
ORDER BY potential_traffic DESC NULLS LAST
LIMIT 100;
"""


def sql_period_days(period_days: Any) -> str:
    """Day count as a SQL numeric literal; fractional windows are kept."""
    days = float(period_days)
    if not math.isfinite(days) or days <= 0:
        raise ValueError("Invalid periodDays, must be a positive number.")
    return str(int(days)) if days.is_integer() else repr(days)


def _date_settings(start_date: str, period_days: float) -> str:
    start = f"'{escape_sql_literal(start_date)}'::DATE"
    days = sql_period_days(period_days)
    return f"""
WITH date_settings AS (
    SELECT
        {start} AS current_period_start,
        {start} + INTERVAL '1 day' * {days} AS current_period_end,
        {start} - INTERVAL '1 day' * {days} AS previous_period_start,
        {start} - INTERVAL '1 day' * {days} AS total_period_start
)"""


def _page_base_data(page_filter: str) -> str:
    return f"""
base_data AS (
    SELECT
        page, query, clicks, impressions, position,
        CASE
            WHEN date::DATE >= ds.current_period_start THEN 1
            WHEN date::DATE >= ds.previous_period_start THEN 2
            ELSE 0
        END AS period_flag
    FROM {{site_hourly}}
    CROSS JOIN date_settings ds
    WHERE date::DATE >= ds.total_period_start
      AND date::DATE < ds.current_period_end
      AND {page_filter}
)"""


def build_page_sql(page_url: str, start_date: str, period_days: int) -> str:
    """
    Per-page performance for the window starting at start_date, compared with
    the same number of days before it.
    """
    page = escape_sql_literal(page_url)
    bucket = _bucket_case("AVG(position)")
    return f"""{_date_settings(start_date, period_days)},
{_page_base_data(f"page = '{page}'")},
aggregated_data AS (
    SELECT
        page, query,
        SUM(clicks) AS total_clicks,
        SUM(impressions) AS total_impressions,
        SUM(clicks)::numeric / NULLIF(SUM(impressions), 0) AS total_ctr,
        AVG(position) AS avg_position,
        SUM(clicks) FILTER (WHERE period_flag = 1) AS recent_clicks,
        AVG(position) FILTER (WHERE period_flag = 1) AS recent_position,
        SUM(clicks) FILTER (WHERE period_flag = 2) AS previous_clicks,
        AVG(position) FILTER (WHERE period_flag = 2) AS previous_position,
        {bucket} AS rank_bucket
    FROM base_data
    GROUP BY page, query
),
page_stats AS (
    SELECT
        page,
        SUM(total_clicks) AS page_total_clicks,
        SUM(total_impressions) AS page_total_impressions,
        COUNT(DISTINCT query) AS total_keywords,
        COUNT(DISTINCT query) FILTER (WHERE rank_bucket BETWEEN 1 AND 10 AND total_clicks > 0) AS keywords_1to10_count,
        COUNT(DISTINCT query) FILTER (WHERE rank_bucket = {GT10_BUCKET} AND total_clicks > 0) AS keywords_gt10_count
    FROM aggregated_data
    GROUP BY page
),
current_best AS (
    SELECT DISTINCT ON (page) page, query AS best_query, recent_clicks AS best_clicks, recent_position AS best_position
    FROM aggregated_data WHERE recent_clicks > 0 ORDER BY page, recent_clicks DESC
),
previous_best AS (
    SELECT DISTINCT ON (page) page, query AS best_query, previous_clicks AS best_clicks, previous_position AS best_position
    FROM aggregated_data WHERE previous_clicks > 0 ORDER BY page, previous_clicks DESC
),
keyword_groups AS (
    SELECT page, rank_bucket,
        STRING_AGG(
            query || '(click:' || total_clicks::text || ', impression:' || total_impressions::text
                  || ', position:' || ROUND(avg_position, 1)::text
                  || ', ctr:' || ROUND(COALESCE(total_ctr, 0) * 100, 2)::text || '%)',
            ', ' ORDER BY total_clicks DESC
        ) AS keywords
    FROM aggregated_data
    WHERE rank_bucket IS NOT NULL AND total_clicks > 0
    GROUP BY page, rank_bucket
),
keyword_pivot AS (
    {_pivot_columns("keyword_groups", "rank_bucket", "rank_")}
),
zero_click AS (
    SELECT page,
        STRING_AGG(
            query || '(click:0, impression:' || total_impressions::text
                  || ', position:' || ROUND(avg_position, 1)::text || ', ctr:0.00%)',
            ', ' ORDER BY avg_position ASC
        ) AS keywords
    FROM aggregated_data WHERE total_clicks = 0
    GROUP BY page
)
SELECT
    ps.page,
    ps.page_total_clicks AS total_clicks,
    ps.page_total_impressions AS total_impressions,
    ROUND(ps.page_total_clicks::numeric * 100 / NULLIF(ps.page_total_impressions, 0), 2) AS total_ctr,
    cb.best_query AS best_query,
    cb.best_clicks AS best_query_clicks,
    ROUND(cb.best_position, 1) AS best_query_position,
    CASE WHEN cb.best_query != pb.best_query THEN '🔄 ' ELSE '' END || pb.best_query AS prev_main_keyword,
    pb.best_clicks AS prev_keyword_traffic,
    ROUND(pb.best_position, 1) AS prev_keyword_rank,
    CASE WHEN cb.best_query = pb.best_query
         THEN (cb.best_clicks - COALESCE(pb.best_clicks, 0))::text ELSE 'N/A' END AS keyword_traffic_change,
    CASE WHEN cb.best_query = pb.best_query AND pb.best_position IS NOT NULL AND cb.best_position IS NOT NULL
         THEN ROUND(pb.best_position - cb.best_position, 1)::text ELSE 'N/A' END AS keyword_rank_change,
    ps.keywords_1to10_count,
    ps.keywords_gt10_count,
    ps.total_keywords,
    ROUND(ps.keywords_1to10_count::numeric * 100.0 / NULLIF(ps.total_keywords, 0), 1) || '%' AS keywords_1to10_ratio,
    {_potential_expr("ps.page_total_clicks", "cb.best_position", "ps.keywords_1to10_count", "ps.total_keywords")} AS potential_traffic,
    CASE WHEN cb.best_position <= 4 THEN '0.7' ELSE '1.0' END AS main_keyword_weight,
    ROUND(({_weight_expr("cb.best_position")} + ps.keywords_1to10_count::numeric / GREATEST(ps.total_keywords, 1) * 0.5 - 1) * 100, 1) || '%' AS potential_improvement_pct,
    {_select_list("kp", "rank_")},
    zc.keywords AS zero_click_keywords
FROM page_stats ps
LEFT JOIN current_best cb ON ps.page = cb.page
LEFT JOIN previous_best pb ON ps.page = pb.page
LEFT JOIN keyword_pivot kp ON ps.page = kp.page
LEFT JOIN zero_click zc ON ps.page = zc.page;
"""


def build_page_like_sql(prefix: str, start_date: str, period_days: int) -> str:
    """Fallback for article URLs whose slug changed: match on the id prefix, best page only."""
    like = escape_sql_literal(prefix) + "%"
    return f"""{_date_settings(start_date, period_days)},
{_page_base_data(f"page LIKE '{like}'")},
aggregated_data AS (
    SELECT
        page, query,
        SUM(clicks) AS total_clicks,
        SUM(clicks) FILTER (WHERE period_flag = 1) AS recent_clicks,
        AVG(position) FILTER (WHERE period_flag = 1) AS recent_position
    FROM base_data
    GROUP BY page, query
    HAVING SUM(clicks) > 0
),
page_stats AS (
    SELECT page, SUM(total_clicks) AS page_total_clicks, COUNT(DISTINCT query) AS total_keywords
    FROM aggregated_data
    GROUP BY page
),
current_best AS (
    SELECT DISTINCT ON (page) page, query AS best_query, recent_clicks AS best_clicks, recent_position AS best_position
    FROM aggregated_data WHERE recent_clicks > 0 ORDER BY page, recent_clicks DESC
)
SELECT
    ps.page,
    ps.page_total_clicks AS total_clicks,
    cb.best_query AS best_query,
    cb.best_clicks AS best_query_clicks,
    ROUND(cb.best_position, 1) AS best_query_position
FROM page_stats ps
LEFT JOIN current_best cb ON ps.page = cb.page
ORDER BY ps.page_total_clicks DESC NULLS LAST
LIMIT 1;
"""


def escape_like_token(token: str) -> str:
    # Keep CJK tokens intact; only neutralise quote and LIKE wildcards
    return re.sub(r"[%_]", "", (token or "").replace("'", "''")).strip()


def sanitize_tokens(tokens: Iterable[str]) -> List[str]:
    seen = set()
    clean: List[str] = []
    for raw in tokens:
        token = escape_like_token(str(raw or ""))
        if len(token) < MIN_TOKEN_LENGTH:
            continue
        key = token.lower()
        if key in seen:
            continue
        seen.add(key)
        clean.append(token)
    return clean[:MAX_TOKENS]


def build_internal_links_sql(
    tokens: List[str],
    start_date: Optional[str] = None,
    period_days: int = 180,
    limit: int = 5,
) -> str:
    """Top pages by clicks among queries that fuzzy-match any token."""
    if tokens:
        like_clauses = " OR ".join(f"query ILIKE '%{t}%'" for t in tokens)
    else:
        like_clauses = "TRUE"

    if start_date and DATE_RE.fullmatch(start_date):
        start_expr = f"'{start_date}'::DATE"
        end_expr = f"{start_expr} + INTERVAL '{int(period_days)} days'"
    else:
        start_expr = f"CURRENT_DATE - INTERVAL '{int(period_days)} days'"
        end_expr = "CURRENT_DATE"
    safe_limit = max(1, min(50, int(limit)))

    return f"""
WITH filtered AS (
    SELECT page, query,
        SUM(clicks) AS clicks,
        SUM(impressions) AS impressions,
        AVG(position) AS avg_position
    FROM {{site}}
    WHERE date::DATE >= {start_expr}
      AND date::DATE < {end_expr}
      AND ({like_clauses})
      AND page NOT LIKE '%/tag/%'
      AND page NOT LIKE '%#%'
      AND page NOT LIKE '%/category/%'
    GROUP BY page, query
),
page_stats AS (
    SELECT page,
        SUM(clicks) AS total_clicks,
        SUM(impressions) AS total_impressions,
        ROUND(AVG(avg_position), 2) AS avg_position
    FROM filtered
    GROUP BY page
),
top_queries AS (
    SELECT DISTINCT ON (page)
        page, query AS top_query, clicks AS top_clicks, ROUND(avg_position, 2) AS top_position
    FROM filtered
    ORDER BY page, clicks DESC
),
query_list AS (
    SELECT page,
        STRING_AGG(query || ' (clicks:' || clicks || ', pos:' || ROUND(avg_position, 1) || ')', ', ' ORDER BY clicks DESC) AS matched_queries
    FROM filtered
    GROUP BY page
)
SELECT ps.page, ps.total_clicks, ps.total_impressions, ps.avg_position,
       tq.top_query, tq.top_clicks, tq.top_position, ql.matched_queries
FROM page_stats ps
LEFT JOIN top_queries tq ON ps.page = tq.page
LEFT JOIN query_list ql ON ps.page = ql.page
ORDER BY ps.total_clicks DESC
LIMIT {safe_limit};
"""
