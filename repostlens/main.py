from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, List, Dict, Any, Union
from datetime import datetime
from urllib.parse import urlparse
import logging
import math
import re
import uuid

from repostlens import config
from repostlens.db.engine import Base, engine, SessionLocal, get_db
from repostlens.models.analysis_models import AnalysisRun

from repostlens.services.upstream import UpstreamError
from repostlens.services.gsc_client import (
    list_sites,
    search_list,
    query_page,
    find_internal_links,
)
from repostlens.services.optimizer import analyze_page
from repostlens.services.analysis_extractor import (
    determine_strategy,
    extract_analysis_data,
    format_as_csv,
    format_as_email,
    format_as_markdown,
    format_raw_csv,
    generate_email_fields,
)
from repostlens.services.outline import generate_outline, generate_outline_batch
from repostlens.services.context_vector import generate_context_vector
from repostlens.services.email_builder import (
    build_email_html,
    html_to_text,
    normalize_api_analysis,
)
from repostlens.services.writer import (
    write_chat_and_structure,
    write_description,
    write_dialogues,
    write_final_content,
)
from repostlens.services.keyword_coverage import (
    clamp_limit,
    fetch_keyword_coverage,
    request_suggestions,
    select_coverage_keywords,
)
from repostlens.services.search_traffic import (
    fetch_content_explorer_for_queries,
    fetch_search_traffic_insights,
)
from repostlens.services.metatag import build_metatag_report, parse_ctr_benchmark
from repostlens.services.batch_processor import process_batch
from repostlens.services.google_chat import ping_webhook, send_analysis_to_chat
from repostlens.services.custom_csv import parse_csv_rows, process_rows

logging.basicConfig(level=config.LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
log = logging.getLogger(__name__)

app = FastAPI(title="RepostLens API", version="1.0.0")

#  CORS setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
WWW_RE = re.compile(r"^www\.", re.IGNORECASE)


# --- Error responses ---

def _error_response(status_code: int, detail: Any) -> JSONResponse:
    body: Dict[str, Any] = {"success": False}
    if isinstance(detail, dict):
        body.update(detail)
    else:
        body["error"] = str(detail)
    return JSONResponse(body, status_code=status_code)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid payload") if errors else "Invalid payload"
    return _error_response(400, message)


@app.exception_handler(UpstreamError)
async def upstream_exception_handler(request: Request, exc: UpstreamError):
    log.error("%s %s upstream failure: %s", request.method, request.url.path, exc)
    return _error_response(502, exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error_response(400, str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log.exception("%s %s failed", request.method, request.url.path)
    return _error_response(500, str(exc) or "Unexpected error")


# --- Create tables on startup ---
@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)


# --- Schemas (Pydantic models) ---

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


Metric = Optional[Union[float, str]]


class SiteRequest(CamelModel):
    site: Optional[str] = None


class ByUrlRequest(CamelModel):
    site: Optional[str] = None
    page: Optional[str] = None
    start_date: Optional[str] = None
    period_days: Optional[Any] = None


class InternalLinksRequest(CamelModel):
    site: Optional[str] = None
    keyword: Optional[str] = Field(default=None, validation_alias=AliasChoices("keyword", "query"))
    start_date: Optional[str] = None
    period_days: Optional[Any] = None
    limit: Optional[Any] = None


class PageMetrics(CamelModel):
    """Keyword metrics for one page, as produced by /api/search/list rows."""

    page: Optional[str] = None
    best_query: Optional[str] = None
    best_query_clicks: Metric = None
    best_query_position: Metric = None
    best_query_volume: Metric = None
    prev_best_query: Optional[str] = None
    prev_best_clicks: Metric = None
    prev_best_position: Metric = None
    prev_main_keyword: Optional[str] = None
    prev_keyword_rank: Metric = None
    prev_keyword_traffic: Metric = None
    total_clicks: Metric = None
    keywords1to10_count: Metric = Field(default=None, alias="keywords1to10Count")
    keywords4to10_count: Metric = Field(default=None, alias="keywords4to10Count")
    total_keywords: Metric = None
    rank1: Optional[str] = None
    rank2: Optional[str] = None
    rank3: Optional[str] = None
    rank4: Optional[str] = None
    rank5: Optional[str] = None
    rank6: Optional[str] = None
    rank7: Optional[str] = None
    rank8: Optional[str] = None
    rank9: Optional[str] = None
    rank10: Optional[str] = None
    rank_gt10: Optional[str] = None


class AnalyzeRequest(PageMetrics):
    model: Optional[str] = None


class OutlineRequest(CamelModel):
    analyze_result: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("analyzeResult", "analysis", "content")
    )


class OutlineBatchRequest(CamelModel):
    items: Optional[List[Any]] = None


class ContextVectorRequest(CamelModel):
    analysis_text: Optional[str] = None
    page_url: Optional[str] = None


class EmailRequest(CamelModel):
    page_url: Optional[str] = None
    analysis_text: Optional[str] = None
    context_vector: Optional[str] = None
    outline: Optional[str] = None
    best_query: Optional[str] = None
    api_analysis: Optional[Any] = None
    search_data: Optional[Dict[str, Any]] = None


class AnalysisTextRequest(CamelModel):
    analysis_text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("analysisText", "analysis")
    )
    page: Optional[str] = None
    best_query: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("bestQuery", "best_query")
    )


class ExtractRequest(AnalysisTextRequest):
    with_email_fields: bool = False


class ChatRequest(CamelModel):
    paragraphs: Optional[List[Any]] = None
    paragraph: Optional[str] = None


class ChatAndStructureRequest(CamelModel):
    paragraph: Optional[str] = None
    brand: Optional[str] = None


class DescriptionRequest(CamelModel):
    analysis_text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("analysisText", "analysis", "analyseResult")
    )
    outline_text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("outlineText", "outline")
    )


class FinalContentRequest(CamelModel):
    paragraph_output: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("paragraphOutput", "paragraph_output")
    )
    generate_content_output: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("generateContentOutput", "generate_content_output")
    )


class CoverageRequest(CamelModel):
    url: Optional[str] = None
    limit: Optional[Any] = None


class ContentExplorerRequest(CamelModel):
    queries: Optional[List[Any]] = None
    # Coverage keywords {text, searchVolume}; used when queries is empty
    keywords: Optional[List[Any]] = None


class MetatagRequest(CamelModel):
    page: Optional[str] = None
    site: Optional[str] = None
    start_date: Optional[Any] = None
    period_days: Optional[Any] = None
    ctr_benchmark: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("ctrBenchmark", "targetCtr", "ctrTarget")
    )
    topic: Optional[str] = None


class BatchItem(PageMetrics):
    url: str
    page: str
    row: Optional[Any] = None


class BatchRequest(CamelModel):
    batch: List[BatchItem]


class SendAnalysisRequest(CamelModel):
    analysis: Optional[str] = None
    page: Optional[str] = None
    best_query: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("bestQuery", "best_query")
    )


class CustomCsvRequest(CamelModel):
    csv: Optional[str] = None


class AnalysisRunOut(BaseModel):
    id: int
    page: str
    best_query: Optional[str]
    strategy: str
    source: str
    model_used: Optional[str]
    analysis: str
    outline: Optional[str]
    suggestions: Optional[Any]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


# --- Helpers ---

def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _clamp_int(value: Any, default: int, lo: int, hi: int) -> int:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(n):
        return default
    return int(max(lo, min(hi, math.floor(n))))


def _derive_site(page: str) -> str:
    host = urlparse(page).hostname or ""
    if not host:
        return ""
    return "sc-domain:" + WWW_RE.sub("", host)


def _resolve_dates(start_date: Any, period_days: Any):
    """Lenient date window: bad values fall back to the last 14 days."""
    start = start_date if isinstance(start_date, str) and DATE_RE.fullmatch(start_date) else None
    try:
        days = float(period_days)
    except (TypeError, ValueError):
        days = 0
    if not math.isfinite(days) or days <= 0:
        days = config.DEFAULT_PERIOD_DAYS
    elif days.is_integer():
        days = int(days)
    return start or config.default_start_date(), days


def _record_run(db: Session, *, page: str, best_query: Optional[str], analysis: str, source: str,
                model_used: Optional[str] = None, outline: Optional[str] = None,
                suggestions: Optional[list] = None):
    """Analysis history is best effort; a failed write never fails the request."""
    try:
        db.add(
            AnalysisRun(
                page=page,
                best_query=best_query,
                strategy=determine_strategy(analysis),
                source=source,
                model_used=model_used,
                analysis=analysis,
                outline=outline,
                suggestions=suggestions,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.error("Could not record analysis run for %s: %s", page, e)


def _record_batch_runs(db: Session, items: List[Dict[str, Any]], outcomes: List[Dict[str, Any]]):
    for item, outcome in zip(items, outcomes):
        if outcome["success"]:
            _record_run(
                db,
                page=item["page"],
                best_query=item.get("bestQuery"),
                analysis=outcome["analysis"],
                source="batch",
                model_used=config.VERTEXAI_TEXT_MODEL,
                outline=outcome["outline"],
                suggestions=outcome["suggestions"],
            )


# --- Endpoints ---

@app.get("/health")
def health():
    return JSONResponse({"status": "ok"})


# ----- Search Console data -----

@app.get("/api/sites")
async def get_sites():
    return await list_sites()


@app.post("/api/search/list")
async def post_search_list(payload: SiteRequest):
    site = _clean(payload.site)
    if not site:
        raise HTTPException(status_code=400, detail="Missing site")
    return await search_list(site)


@app.post("/api/search/by-url")
async def post_search_by_url(payload: ByUrlRequest):
    site = _clean(payload.site)
    page = re.sub(r"\s+", "", payload.page or "")
    if not site and HTTP_URL_RE.match(page):
        site = _derive_site(page)
    if not site or not page:
        raise HTTPException(status_code=400, detail="Missing site or page")
    if not HTTP_URL_RE.match(page):
        raise HTTPException(status_code=400, detail="Invalid page URL")

    start_date = payload.start_date or config.default_start_date()
    raw_days = payload.period_days or config.DEFAULT_PERIOD_DAYS
    try:
        period_days = float(raw_days)
    except (TypeError, ValueError):
        period_days = float("nan")
    if not math.isfinite(period_days) or period_days <= 0:
        raise HTTPException(status_code=400, detail="Invalid periodDays, must be a positive number.")
    if not DATE_RE.fullmatch(str(start_date)):
        raise HTTPException(status_code=400, detail="Invalid startDate, must be in YYYY-MM-DD format.")

    period = int(period_days) if period_days.is_integer() else period_days
    return await query_page(site, page, str(start_date), period)


@app.post("/api/search/internal-links")
async def post_internal_links(payload: InternalLinksRequest):
    site = _clean(payload.site)
    keyword = _clean(payload.keyword)
    if not site or not keyword:
        raise HTTPException(status_code=400, detail="Missing site or keyword")

    return await find_internal_links(
        site,
        keyword,
        start_date=payload.start_date or None,
        period_days=_clamp_int(payload.period_days, 180, 7, 365),
        limit=_clamp_int(payload.limit, 5, 1, 20),
    )


# ----- Analysis -----

@app.post("/api/optimize/analyze")
async def post_analyze(payload: AnalyzeRequest, db: Session = Depends(get_db)):
    page = _clean(payload.page)
    if not page:
        raise HTTPException(status_code=400, detail="Missing page")

    metrics = payload.model_dump(by_alias=True, exclude={"model"})
    result = await analyze_page(page, metrics, model=payload.model)

    await run_in_threadpool(
        _record_run,
        db,
        page=page,
        best_query=payload.best_query,
        analysis=result["analysis"],
        source="analyze",
        model_used=payload.model or config.DEFAULT_LLM_MODEL,
    )
    return result


@app.get("/api/analyses", response_model=List[AnalysisRunOut])
def list_analyses(page: Optional[str] = None, limit: int = 20, db: Session = Depends(get_db)):
    query = db.query(AnalysisRun)
    if page:
        query = query.filter(AnalysisRun.page == page)
    limit = max(1, min(100, limit))
    return query.order_by(AnalysisRun.created_at.desc(), AnalysisRun.id.desc()).limit(limit).all()


# ----- Reports -----

@app.post("/api/report/outline")
async def post_outline(payload: OutlineRequest):
    analysis_text = _clean(payload.analyze_result)
    if not analysis_text:
        raise HTTPException(status_code=400, detail="Missing analyzeResult")
    outline = await generate_outline(analysis_text)
    return {"success": True, "outline": outline}


@app.post("/api/report/outline-batch")
async def post_outline_batch(payload: OutlineBatchRequest):
    results = await generate_outline_batch(payload.items or [])
    return {"success": True, "results": results}


@app.post("/api/report/context-vector")
async def post_context_vector(payload: ContextVectorRequest):
    page_url = _clean(payload.page_url)
    if not page_url:
        raise HTTPException(status_code=400, detail="Missing pageUrl")
    return await generate_context_vector(payload.analysis_text or "", page_url)


@app.post("/api/report/email")
async def post_email(payload: EmailRequest):
    page_url = _clean(payload.page_url)
    analysis_text = _clean(payload.analysis_text)
    if not page_url:
        raise HTTPException(status_code=400, detail="Missing pageUrl")
    if not analysis_text:
        raise HTTPException(status_code=400, detail="Missing analysisText")

    search_data = payload.search_data or None
    best_query = _clean(payload.best_query) or (search_data and _clean(search_data.get("best_query"))) or ""

    html = build_email_html(
        page_url,
        best_query,
        analysis_text,
        normalize_api_analysis(payload.api_analysis, search_data),
        context_vector=_clean(payload.context_vector),
        outline=_clean(payload.outline),
    )
    return {"success": True, "html": html, "text": html_to_text(html)}


@app.post("/api/report/extract")
async def post_extract(payload: ExtractRequest):
    analysis_text = _clean(payload.analysis_text)
    if not analysis_text:
        raise HTTPException(status_code=400, detail="Missing analysisText")

    data = extract_analysis_data(analysis_text, payload.page or "", payload.best_query)
    fields = await generate_email_fields(data, analysis_text) if payload.with_email_fields else None
    return {
        "success": True,
        "data": data,
        "markdown": format_as_markdown(data),
        "csv": format_as_csv(data),
        "email": format_as_email(data, fields),
    }


@app.post("/api/report/email-fields")
async def post_email_fields(payload: AnalysisTextRequest):
    analysis_text = _clean(payload.analysis_text)
    if not analysis_text:
        raise HTTPException(status_code=400, detail="Missing analysisText")

    data = extract_analysis_data(analysis_text, payload.page or "", payload.best_query)
    fields = await generate_email_fields(data, analysis_text)
    return {"success": fields is not None, "fields": fields, "email": format_as_email(data, fields)}


@app.post("/api/report/csv")
async def post_report_csv(payload: AnalysisTextRequest):
    return {
        "success": True,
        "csvContent": format_raw_csv(payload.page or "", payload.best_query or "", payload.analysis_text or ""),
    }


# ----- Writing assistants -----

@app.post("/api/write/chat")
async def post_write_chat(payload: ChatRequest):
    paragraphs = payload.paragraphs or ([payload.paragraph] if payload.paragraph else [])
    return await write_dialogues(paragraphs)


@app.post("/api/write/chat-and-structure")
async def post_write_chat_and_structure(payload: ChatAndStructureRequest):
    return await write_chat_and_structure(payload.paragraph or "", payload.brand or "")


@app.post("/api/write/description")
async def post_write_description(payload: DescriptionRequest):
    return await write_description(payload.analysis_text or "", payload.outline_text or "")


@app.post("/api/write/final-content")
async def post_write_final_content(payload: FinalContentRequest):
    return await write_final_content(payload.paragraph_output or "", payload.generate_content_output or "")


# ----- Keywords / SERP -----

@app.post("/api/keyword/coverage")
async def post_keyword_coverage(payload: CoverageRequest):
    url = _clean(payload.url)
    if not url:
        raise HTTPException(status_code=400, detail="Missing url")

    debug_id = uuid.uuid4().hex[:12]
    data = await fetch_keyword_coverage(url)
    if data is None:
        log.warning("[%s] keyword coverage unavailable for %s", debug_id, url)
        return {"success": False, "covered": [], "uncovered": [], "debugId": debug_id}
    covered, uncovered = select_coverage_keywords(data, clamp_limit(payload.limit))
    return {"success": True, "covered": covered, "uncovered": uncovered, "debugId": debug_id}


@app.post("/api/keyword/suggestions")
async def post_keyword_suggestions(payload: CoverageRequest):
    url = _clean(payload.url)
    if not url:
        raise HTTPException(status_code=400, detail="Missing url")

    data = await fetch_keyword_coverage(url)
    if data is None:
        return {"success": False, "suggestions": "", "covered": [], "uncovered": []}
    suggestions = await request_suggestions(data["covered"], data["uncovered"])
    return {
        "success": True,
        "suggestions": suggestions,
        "covered": data["covered"],
        "uncovered": data["uncovered"],
    }


@app.post("/api/content-explorer")
async def post_content_explorer(payload: ContentExplorerRequest):
    queries = [str(q) for q in payload.queries or [] if q is not None and str(q)]
    if queries:
        return await fetch_content_explorer_for_queries(queries)
    if payload.keywords:
        return await fetch_search_traffic_insights(payload.keywords)
    raise HTTPException(status_code=400, detail="Missing queries")


@app.post("/api/metatag")
async def post_metatag(payload: MetatagRequest):
    page = _clean(payload.page)
    site = _clean(payload.site)
    if not page or not HTTP_URL_RE.match(page):
        raise HTTPException(status_code=400, detail="Missing or invalid page URL.")
    if not site:
        raise HTTPException(status_code=400, detail="Missing site token.")

    start_date, period_days = _resolve_dates(payload.start_date, payload.period_days)
    rows = await query_page(site, page, start_date, period_days)
    if not rows:
        raise HTTPException(status_code=404, detail="No search performance data returned.")

    return await build_metatag_report(
        page,
        site,
        rows[0],
        start_date=start_date,
        period_days=period_days,
        ctr_benchmark=parse_ctr_benchmark(payload.ctr_benchmark),
        topic=_clean(payload.topic),
    )


# ----- Batch processing -----

@app.post("/api/batch-process")
async def post_batch_process(payload: BatchRequest, db: Session = Depends(get_db)):
    items = [item.model_dump(by_alias=True) for item in payload.batch]
    result = await process_batch(items)
    await run_in_threadpool(_record_batch_runs, db, items, result["results"])
    return result


# ----- Google Chat -----

@app.post("/api/chat/send-analysis")
async def post_send_analysis(payload: SendAnalysisRequest):
    analysis = _clean(payload.analysis)
    if not analysis:
        raise HTTPException(status_code=400, detail="Missing analysis")
    return await send_analysis_to_chat(analysis, payload.page or "", payload.best_query or "")


@app.post("/api/chat/test-webhook")
async def post_test_webhook():
    return await ping_webhook()


# ----- CSV conversion -----

@app.post("/api/custom-csv/convert")
async def post_custom_csv(payload: CustomCsvRequest):
    if not _clean(payload.csv):
        raise HTTPException(status_code=400, detail="Missing csv")
    rows = process_rows(parse_csv_rows(payload.csv))
    return {"success": True, "count": len(rows), "rows": rows}
