# metatag.py

import logging
import math
import re
from typing import Any, Dict, List, Optional

from repostlens.services.keyword_coverage import fetch_keyword_coverage
from repostlens.services.keyword_rows import collect_all_current_rows, normalize_keyword
from repostlens.services.llm_clients import chat_complete
from repostlens.services.upstream import UpstreamError

log = logging.getLogger(__name__)

DEFAULT_CTR_BENCHMARK = 5.0
CSV_LIMIT = 20
COVERAGE_BULLET_LIMIT = 10
NO_COVERAGE = "- 無可用資料"

METATAG_SYSTEM_PROMPT = (
    "You are an elite SEO strategist focused on increasing CTR via meta titles. "
    "Follow all rules in the user's instructions. Use Traditional Chinese for narrative content "
    "and keep English section headings exactly as provided. Each meta title must be concise, "
    "compelling, and under 58 characters, avoiding keyword stuffing or vague promises."
)


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.replace(",", ""))
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def parse_ctr_benchmark(raw: Any) -> float:
    """Accepts 3, 0.03, "3%" or "0.03"; anything at or below 1 is a ratio."""
    value = None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool) and math.isfinite(raw):
        value = float(raw)
    elif isinstance(raw, str) and raw.strip():
        try:
            value = float(raw.replace("%", "").strip())
        except ValueError:
            value = None
    if value is None:
        return DEFAULT_CTR_BENCHMARK
    return value * 100 if value <= 1 else value


def build_keyword_metrics(page_stats: Dict[str, Any]) -> List[Dict[str, Any]]:
    """One metric per normalized keyword, keeping the row with most impressions."""
    metrics: Dict[str, Dict[str, Any]] = {}
    for row in collect_all_current_rows(page_stats):
        keyword = str(row.get("keyword") or "").strip()
        key = normalize_keyword(keyword) if keyword else ""
        if not key:
            continue

        clicks = to_number(row.get("clicks"))
        impressions = to_number(row.get("impressions"))
        ctr = row.get("ctr")
        if not isinstance(ctr, (int, float)):
            ctr = (clicks / impressions) * 100 if impressions and clicks is not None else None

        existing = metrics.get(key)
        if existing is None or (impressions or 0) > (existing["impressions"] or 0):
            metrics[key] = {
                "keyword": keyword,
                "clicks": clicks,
                "impressions": impressions,
                "ctr": ctr,
                "position": to_number(row.get("position")),
                "rankLabel": str(row.get("rank") or ""),
                "searchVolume": existing["searchVolume"] if existing else None,
            }
    return list(metrics.values())


def _dedupe_coverage(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    store: Dict[str, Dict[str, Any]] = {}
    for item in items or []:
        text = str(item.get("text") or "").strip() if isinstance(item, dict) else ""
        key = normalize_keyword(text) if text else ""
        if not key:
            continue
        sv = item.get("searchVolume")
        sv = float(sv) if isinstance(sv, (int, float)) and not isinstance(sv, bool) else None
        gsc = item.get("gsc") if isinstance(item.get("gsc"), dict) else {}
        digest = {
            "text": text,
            "searchVolume": sv,
            "gscClicks": to_number(gsc.get("clicks")),
            "gscImpressions": to_number(gsc.get("impressions")),
        }
        current = store.get(key)
        if current is None or (sv if sv is not None else -1) > (
            current["searchVolume"] if current["searchVolume"] is not None else -1
        ):
            store[key] = digest
    return list(store.values())


def build_coverage_digest(covered, uncovered) -> Dict[str, Any]:
    covered_digest = _dedupe_coverage(covered)
    uncovered_digest = _dedupe_coverage(uncovered)
    lookup = {normalize_keyword(e["text"]): e for e in covered_digest}
    for entry in uncovered_digest:
        lookup.setdefault(normalize_keyword(entry["text"]), entry)
    return {"covered": covered_digest, "uncovered": uncovered_digest, "map": lookup}


def enrich_with_search_volume(metrics: List[Dict[str, Any]], lookup: Dict[str, Dict[str, Any]]):
    for metric in metrics:
        info = lookup.get(normalize_keyword(metric["keyword"]))
        if info and info["searchVolume"] is not None:
            metric["searchVolume"] = info["searchVolume"]


def pick_target_keyword(keywords: List[Dict[str, Any]], ctr_benchmark: float) -> Optional[Dict[str, Any]]:
    """Highest-impression keyword under the CTR benchmark, else the first keyword."""
    candidates = [
        k for k in keywords
        if (k.get("impressions") or 0) > 0 and isinstance(k.get("ctr"), (int, float)) and k["ctr"] < ctr_benchmark
    ]
    if candidates:
        candidates.sort(key=lambda k: (-(k.get("impressions") or 0), k["ctr"]))
        return candidates[0]
    return keywords[0] if keywords else None


def escape_csv_field(value: Any) -> str:
    text = str(value if value is not None else "")
    if re.search(r'[",\n]', text):
        return '"' + text.replace('"', '""') + '"'
    return text


def format_csv_number(value: Optional[float]) -> str:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return "N/A"
    if abs(value) >= 1:
        return str(math.floor(value + 0.5))
    text = f"{value:.2f}"
    return text[:-3] if text.endswith(".00") else text


def format_percent(value: Optional[float]) -> str:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return "N/A"
    return f"{value:.2f}%"


def format_number(value: Optional[float]) -> str:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return "N/A"
    if value < 10:
        text = f"{value:,.2f}".rstrip("0").rstrip(".")
        return text or "0"
    return f"{math.floor(value + 0.5):,}"


def format_performance_csv(keywords: List[Dict[str, Any]], limit: int = CSV_LIMIT) -> str:
    header = "Keyword, Impressions, Clicks, CTR"
    if not keywords:
        return f"{header}\nNo data, N/A, N/A, N/A"
    lines = [
        f"{escape_csv_field(k['keyword'])}, {format_csv_number(k.get('impressions'))}, "
        f"{format_csv_number(k.get('clicks'))}, {format_percent(k.get('ctr'))}"
        for k in keywords[:limit]
    ]
    return "\n".join([header] + lines)


def format_coverage_bullets(entries: List[Dict[str, Any]], limit: int = COVERAGE_BULLET_LIMIT) -> str:
    if not entries:
        return NO_COVERAGE
    subset = sorted(entries, key=lambda e: e["searchVolume"] or 0, reverse=True)[:limit]
    lines = []
    for entry in subset:
        stats = []
        if entry["searchVolume"] is not None:
            stats.append(f"SV: {format_number(entry['searchVolume'])}")
        if entry["gscImpressions"] is not None:
            stats.append(f"Imp: {format_number(entry['gscImpressions'])}")
        if entry["gscClicks"] is not None:
            stats.append(f"Clicks: {format_number(entry['gscClicks'])}")
        suffix = f" ({', '.join(stats)})" if stats else ""
        lines.append(f"- {entry['text']}{suffix}")
    return "\n".join(lines)


def extract_totals(
    page_stats: Dict[str, Any], keywords: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Optional[float]]:
    """Page totals from the row; impressions fall back to the sum over parsed keywords."""
    clicks = to_number(page_stats.get("total_clicks"))
    impressions = to_number(page_stats.get("total_impressions"))
    ctr = to_number(page_stats.get("total_ctr"))
    if impressions is None and keywords:
        known = [k["impressions"] for k in keywords if k.get("impressions") is not None]
        impressions = sum(known) if known else None
        if clicks is None:
            clicks = sum(k["clicks"] or 0 for k in keywords)
    if ctr is None and clicks is not None and impressions:
        ctr = clicks / impressions * 100
    return {"totalClicks": clicks, "totalImpressions": impressions, "totalCtr": ctr}


def coverage_comment(label: str, bullets: str) -> Optional[str]:
    if not bullets or not bullets.strip() or bullets.strip() == NO_COVERAGE:
        return None
    condensed = [re.sub(r"^[-\s]+", "", line).strip() for line in bullets.split("\n")]
    condensed = [c for c in condensed if c][:5]
    if not condensed:
        return None
    return f"{label} keywords sample → {'; '.join(condensed)}"


SOP_TEMPLATE = """### **SOP: Meta Title Optimization for High-Potential Keywords**
#### **mindset**
* **User-Centric & Reverse-Engineered:** Consider the difficulty required to input a query. This reflects the user's knowledge, their understanding of the unknown, and what they must already know. Provide meta titles based on this analysis.
* **Opportunity-Driven:** The keyword with the most impressions, if its CTR is below the benchmark (e.g., {benchmark}), represents the biggest optimization opportunity and potential.
* **Strategy-First:** The title is the final embodiment of the strategy, not a product of inspiration.
#### **task**
Deconstruct keywords from the perspectives of the "User Knowledge Spectrum" and "Search Intent," focusing on the keyword with the greatest potential opportunity.
- Topic / URL: {topic}

#### **thinking**
**Core Analysis: Reverse-Engineer the User from the Query**
**Definition:** Treat each query as the exact input the user can already type. Assume they have already skimmed existing meta titles yet remain unconvinced; your rationale must expose what those titles failed to answer.
Ask: **"What does a user need to know to be able to type this keyword?"** Use the following framework to analyze the provided keywords.
* **Low-Difficulty Query (Broad terms, e.g., "shrine amulet"):**
* **User Knowledge:**
* **Search Intent:**
* **Information Gap:**
* **Medium-Difficulty Query (Specific name + broad term, e.g., "Asagaya Shrine amulet"):**
* **User Knowledge:**
* **Search Intent:**
* **Information Gap:**
* **High-Difficulty Query (Specific name + specific detail, e.g., "Asagaya Shrine bracelet color meaning"):**
* **User Knowledge:**
* **Search Intent:**
* **Information Gap:**

#### **detail defined tasks**
1. **Data Input & Target Identification:**
* Receive performance data and the CTR benchmark.
* Identify the **single target keyword** that fits the "highest impressions, but CTR below benchmark" profile.
* Input data provided below:
```
{performance_csv}
```
* CTR Benchmark: {benchmark}
* Data period: {period_days} days starting {start_date}
2. **User & Query Deconstruction:**
* Apply the `thinking` framework above to select at least three keywords that map to Low / Medium / High difficulty tiers.
* Pinpoint the precise User Persona, Prior Knowledge, and Information Gap for each tier, highlight which keyword is the **primary target** (the highest impressions below benchmark), and explain why current SERP titles are failing that user.
3. **Communication Strategy Formulation:**
* Based on the target user's Information Gap, design at least two distinct communication strategies (e.g., The Guide, The Benefit-Oriented).
4. **Strategy Decision Chain:**
* Step 1 (Hot Topic Gate): Decide if the primary target keyword signals a time-sensitive or newsworthy event. If yes, lock in the **Amazing Event** style (entity + spark) for all proposals.
* Step 2 (Short-Tail Coverage): Check if that target keyword has a short-tail variant (<=2 words) already in the query list. If it does, ensure the final titles bridge at least two distinct intents (e.g., location + benefit).
* Step 3 (Evergreen Strategy): If neither condition applies, fall back to the strongest general strategy that solves the user's information gap.

#### **todo**
* [x] Fill in the required data (topic, benchmark, performance data).
* [ ] Execute the `thinking` framework to analyze the queries.
* [ ] Report the identified "target keyword" and its detailed analysis.
* [ ] Run the strategy decision chain (Hot Topic → Short-Tail → Evergreen) and record the outcome.
* [ ] Draft 2-3 meta title options based on the defined strategies.
* [ ] Provide a rationale for each title.

#### **not to do**
* **Do not state known facts:** Avoid titles that only confirm information the user already knows.
* **Do not be vague:** Avoid generic titles that don't make a specific "promise" to the user.
* **Do not stuff keywords:** Focus on communicating the solution, not just listing terms.

#### **notice**
* The goal is to create a title that perfectly matches the user's knowledge level and bridges their specific information gap.
* A low CTR on a high-impression keyword is the clearest signal of a mismatch between the user's intent and the title's promise.
* For event-driven topics, combine the concrete entity (e.g., location, performer, object) with an emotional or urgent hook; describe the spark (e.g., sold out, clash, reveal) instead of generic words like '爭議'.
* If the Hot Topic gate fires, every proposal must follow the **Amazing Event** style (entity + spark) and explicitly surface the urgency.
* Each proposed title must include the primary target keyword verbatim.

#### **output format**
1. **Target Keyword Identified:**
* [AI will fill in the identified target keyword here]
2. **User & Query Deconstruction Report (from the `thinking` framework):**
* **Low-Difficulty Entry:**
  * **Keyword:** [AI-filled keyword]
  * **User Knowledge:** [...]
  * **Search Intent:** [...]
  * **Core Information Gap:** [...]
  * **Rationale:** [Why existing SERP titles miss this need]
* **Medium-Difficulty Entry:**
  * **Keyword:** [AI-filled keyword, mark with (Target Keyword) if applicable]
  * **User Knowledge:** [...]
  * **Search Intent:** [...]
  * **Core Information Gap:** [...]
  * **Rationale:** [Why existing SERP titles miss this need]
* **High-Difficulty Entry:**
  * **Keyword:** [AI-filled keyword]
  * **User Knowledge:** [...]
  * **Search Intent:** [...]
  * **Core Information Gap:** [...]
  * **Rationale:** [Why existing SERP titles miss this need]
* **Strategy Decision Notes:**
  * **Hot Topic Gate:** [Yes/No + reasoning]
  * **Short-Tail Coverage:** [Yes/No + intents merged]
  * **Fallback Strategy:** [Chosen general strategy if applicable]
3. **Meta Title Optimization Proposals:**
* **Proposal A (Strategy: [e.g., The Guide])**
* **Title:** [AI-written Title A]
* **Rationale:** [Explanation of how this title addresses the identified Information Gap]
* **Proposal B (Strategy: [e.g., The Benefit-Oriented])**
* **Title:** [AI-written Title B]
* **Rationale:** [Explanation of how this title appeals to the identified Search Intent]"""


def build_metatag_prompt(
    *,
    topic: str,
    page: str,
    site: str,
    start_date: str,
    period_days: int,
    ctr_benchmark: float,
    performance_csv: str,
    covered_bullets: str,
    uncovered_bullets: str,
    totals: Dict[str, Optional[float]],
    target_keyword: Optional[Dict[str, Any]],
) -> str:
    lines = [
        SOP_TEMPLATE.format(
            benchmark=format_percent(ctr_benchmark),
            topic=topic or page,
            performance_csv=performance_csv,
            period_days=period_days,
            start_date=start_date,
        )
    ]
    if target_keyword:
        lines.append("")
        lines.append(
            f"// Target hint → {target_keyword['keyword']} "
            f"(Impr: {format_number(target_keyword.get('impressions'))}, "
            f"CTR: {format_percent(target_keyword.get('ctr'))}, "
            f"SV: {format_number(target_keyword.get('searchVolume'))})"
        )
    lines.append(
        f"// Page totals → Clicks: {format_number(totals['totalClicks'])}, "
        f"Impressions: {format_number(totals['totalImpressions'])}, CTR: {format_percent(totals['totalCtr'])}"
    )
    lines.append(f"// Site token → {site}")
    lines.append(f"// Page URL → {page}")
    lines.append(f"// Data timeframe → {period_days} days starting {start_date}")
    for comment in (coverage_comment("Covered", covered_bullets), coverage_comment("Uncovered", uncovered_bullets)):
        if comment:
            lines.append(f"// {comment}")
    return "\n".join(lines)


async def build_metatag_report(
    page: str,
    site: str,
    page_stats: Dict[str, Any],
    *,
    start_date: str,
    period_days: int,
    ctr_benchmark: float = DEFAULT_CTR_BENCHMARK,
    topic: str = "",
) -> Dict[str, Any]:
    """
    Meta-title report for one page from its search row: picks the
    under-performing keyword and asks the model for title proposals.
    """
    topic = topic or str(page_stats.get("best_query") or "").strip() or page
    keywords = build_keyword_metrics(page_stats)

    digest = {"covered": [], "uncovered": [], "map": {}}
    coverage = await fetch_keyword_coverage(page)
    if coverage:
        digest = build_coverage_digest(coverage["covered"], coverage["uncovered"])
        enrich_with_search_volume(keywords, digest["map"])

    keywords.sort(key=lambda k: k.get("impressions") or 0, reverse=True)
    target = pick_target_keyword(keywords, ctr_benchmark)
    totals = extract_totals(page_stats, keywords)
    covered_bullets = format_coverage_bullets(digest["covered"])
    uncovered_bullets = format_coverage_bullets(digest["uncovered"])

    prompt = build_metatag_prompt(
        topic=topic,
        page=page,
        site=site,
        start_date=start_date,
        period_days=period_days,
        ctr_benchmark=ctr_benchmark,
        performance_csv=format_performance_csv(keywords),
        covered_bullets=covered_bullets,
        uncovered_bullets=uncovered_bullets,
        totals=totals,
        target_keyword=target,
    )

    report = await chat_complete(prompt, system=METATAG_SYSTEM_PROMPT)
    if not report:
        raise UpstreamError("Meta title generation returned empty response.")

    return {
        "success": True,
        "report": report,
        "targetKeyword": target,
        "totals": totals,
        "keywords": keywords,
        "coverage": {"covered": digest["covered"], "uncovered": digest["uncovered"]},
        "prompt": prompt,
    }
