"""
Parsing of the pivoted rank-bucket strings returned by the search queries,
e.g. rank_4 = "kw a(click: 3, impression: 120, position: 4.2, ctr: 2.50%), kw b(...)".
"""

import re
import unicodedata
from typing import Any, Dict, List, Optional

ENTRY_SPLIT_RE = re.compile(r"\),\s+")
ENTRY_WITH_CTR_RE = re.compile(
    r"^(.+?)\(\s*click\s*:\s*([\d.]+)\s*,\s*impression\s*:\s*([\d.]+)\s*,"
    r"\s*position\s*:\s*([\d.]+)\s*,\s*ctr\s*:\s*([\d.]+)%\s*\)$",
    re.IGNORECASE,
)
ENTRY_RE = re.compile(
    r"^(.+?)\(\s*click\s*:\s*([\d.]+)\s*,\s*impression\s*:\s*([\d.]+)\s*,"
    r"\s*position\s*:\s*([\d.]+)\s*\)$",
    re.IGNORECASE,
)

_SPACE_RE = re.compile(r"[\u3000\s]+")
_ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")
_PUNCT_RE = re.compile(r"['\"`’“”‘、/\\|,:;._+~!@#$%^&*()（）\[\]【】{}<>?\-]+")

BUCKET_LABELS = [str(i) for i in range(1, 11)]


def split_entries(raw: Any) -> List[str]:
    if not raw or not isinstance(raw, str):
        return []
    parts = ENTRY_SPLIT_RE.split(raw)
    return [
        p + ")" if i < len(parts) - 1 and not p.endswith(")") else p
        for i, p in enumerate(parts)
    ]


def _num(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def parse_entry(label: str, part: str) -> Dict[str, Any]:
    m = ENTRY_WITH_CTR_RE.match(part)
    if m:
        return {
            "rank": label,
            "keyword": m.group(1).strip(),
            "clicks": _num(m.group(2)),
            "impressions": _num(m.group(3)),
            "position": _num(m.group(4)),
            "ctr": _num(m.group(5)),
        }
    m = ENTRY_RE.match(part)
    if m:
        return {
            "rank": label,
            "keyword": m.group(1).strip(),
            "clicks": _num(m.group(2)),
            "impressions": _num(m.group(3)),
            "position": _num(m.group(4)),
            "ctr": None,
        }
    name = part[: part.index("(")].strip() if "(" in part else part.strip()
    return {"rank": label, "keyword": name, "clicks": None, "impressions": None, "position": None, "ctr": None}


def parse_bucket(label: str, raw: Any) -> List[Dict[str, Any]]:
    return [parse_entry(label, p) for p in split_entries(raw)]


def normalize_keyword(raw: Any) -> str:
    """Comparison key: NFKC, lowercase, no whitespace, zero-width chars or punctuation."""
    text = unicodedata.normalize("NFKC", str(raw)).lower()
    text = _SPACE_RE.sub("", text)
    text = _ZERO_WIDTH_RE.sub("", text)
    return _PUNCT_RE.sub("", text)


def _bucket_value(row: Dict[str, Any], suffix: str) -> Any:
    # Single-page rows name the pivots rank_N; list rows use current_rank_N
    return row.get(f"rank_{suffix}") or row.get(f"current_rank_{suffix}")


def collect_all_current_rows(row: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for label in BUCKET_LABELS:
        rows.extend(parse_bucket(label, _bucket_value(row, label)))
    rows.extend(parse_bucket(">10", _bucket_value(row, "gt10")))
    return rows
