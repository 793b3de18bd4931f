import logging
import re
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

from repostlens.config import CONTENT_PROXY_URL, FETCH_USER_AGENT
from repostlens.services.upstream import UpstreamError, post_json

log = logging.getLogger(__name__)

MAIN_ARTICLE_CLASS = "pl-main-article"

# PressLogic properties served by the content proxy
SITE_CODES = {
    "pretty.presslogic.com": "GS_HK",
    "girlstyle.com": "GS_TW",
    "urbanlifehk.com": "UL_HK",
    "poplady-mag.com": "POP_HK",
    "topbeautyhk.com": "TOP_HK",
    "thekdaily.com": "KD_HK",
    "businessfocus.io": "BF_HK",
    "mamidaily.com": "MD_HK",
    "thepetcity.co": "PET_HK",
}

REGION_LOCALES = {
    "hk": {"language": "繁體中文（香港）", "tone": "親切、地道、生活化"},
    "tw": {"language": "繁體中文（台灣）", "tone": "溫馨、在地、貼心"},
    "cn": {"language": "簡體中文（中國大陸）", "tone": "專業、直接、實用"},
    "sg": {"language": "繁體中文（新加坡）", "tone": "多元、現代、簡潔"},
    "my": {"language": "繁體中文（馬來西亞）", "tone": "多元、友善、實用"},
}

REGION_RE = re.compile(r"/(hk|tw|sg|my|cn)/", re.IGNORECASE)
ARTICLE_ID_RE = re.compile(r"/article/(\d+)", re.IGNORECASE)


async def fetch_page_html(url: str) -> str:
    """
    Fetch the live article page. Non-2xx raises UpstreamError("Fetch failed: <status>").
    """
    async with httpx.AsyncClient(timeout=40, follow_redirects=True) as client:
        resp = await client.get(url, headers={"User-Agent": FETCH_USER_AGENT})
    if resp.status_code >= 400:
        raise UpstreamError(f"Fetch failed: {resp.status_code}", resp.status_code)
    return resp.text


def _collapse(text: str) -> str:
    lines = [re.sub(r"[ \t\xa0]+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def to_plain_text(html: str) -> str:
    """Readable text from an HTML fragment; list items keep a '- ' marker."""
    soup = BeautifulSoup(html or "", "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    for li in soup.find_all("li"):
        li.string = "- " + li.get_text(" ", strip=True)
    for br in soup.find_all("br"):
        br.replace_with("\n")
    return _collapse(soup.get_text("\n"))


def _meta_content(soup: BeautifulSoup, **attrs) -> str:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip()
    return ""


def extract_page_content(html: str, max_chars: int = 6000) -> Dict[str, str]:
    """
    Title / description / og tags plus the main article text.

    PressLogic templates wrap the body in `.pl-main-article`; other pages
    fall back to the whole document.
    """
    soup = BeautifulSoup(html or "", "lxml")

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()

    block = soup.find(["article", "div"], class_=MAIN_ARTICLE_CLASS)
    for img in (block or soup).find_all("img"):
        img.decompose()
    text = to_plain_text(str(block) if block else str(soup))

    return {
        "title": title,
        "metaDescription": _meta_content(soup, name="description"),
        "ogTitle": _meta_content(soup, property="og:title"),
        "ogDescription": _meta_content(soup, property="og:description"),
        "text": text[:max_chars],
    }


def detect_region(page_url: str) -> str:
    if "holidaysmart.io" not in (page_url or ""):
        return "hk"
    match = REGION_RE.search(page_url)
    return match.group(1).lower() if match else "hk"


def locale_for(page_url: str) -> Dict[str, str]:
    return REGION_LOCALES.get(detect_region(page_url), REGION_LOCALES["hk"])


def derive_site_code_and_id(page_url: str) -> Tuple[str, str]:
    """
    (siteCode, resourceId) for the content proxy, e.g.
    https://holidaysmart.io/tw/article/123/x -> ("HS_TW", "123").
    """
    parts = urlsplit(page_url)
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[len("www."):]
    path = parts.path or ""

    if host == "holidaysmart.io":
        site_code: Optional[str] = "HS_TW" if "/tw/" in path.lower() else "HS_HK"
    else:
        site_code = SITE_CODES.get(host)
    if not site_code:
        raise ValueError(f"Unknown site: {host}")

    match = ARTICLE_ID_RE.search(path)
    if not match:
        raise ValueError(f"Cannot parse resourceId from path: {path}")
    return site_code, match.group(1)


def _pick_article_html(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    content = data.get("content")
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}
    candidates = [
        content["data"].get("post_content")
        if isinstance(content, dict) and isinstance(content.get("data"), dict)
        else None,
        inner.get("post_content"),
        inner.get("content"),
        content,
        data.get("html"),
        data.get("text"),
    ]
    for value in candidates:
        if isinstance(value, str) and value:
            return value
    return ""


async def fetch_article_via_proxy(page_url: str) -> str:
    """Raw article HTML from the PressLogic content proxy ("" when the reply has none)."""
    site_code, resource_id = derive_site_code_and_id(page_url)
    data = await post_json(
        CONTENT_PROXY_URL,
        {"resourceId": resource_id, "siteCode": site_code},
        error_message="Proxy fetch failed: {status}",
    )
    html = _pick_article_html(data)
    if not html:
        log.warning("Content proxy returned no article body for %s (%s/%s)", page_url, site_code, resource_id)
    return html
