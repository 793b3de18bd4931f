from unittest.mock import AsyncMock, MagicMock, patch

from pydantic import ValidationError

from repostlens import main
from repostlens.services.context_vector import ContextVectorResponse
from repostlens.services.upstream import UpstreamError


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


# ----- search -----

def test_search_list_requires_site(client):
    res = client.post("/api/search/list", json={})
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Missing site"}


def test_search_list_upstream_error_is_502(client):
    failing = AsyncMock(side_effect=UpstreamError("Upstream error 500", 500, "boom"))
    with patch("repostlens.main.search_list", failing):
        res = client.post("/api/search/list", json={"site": "sc-domain:a.test"})
    assert res.status_code == 502
    assert res.json() == {"success": False, "error": "Upstream error 500", "status": 500, "body": "boom"}


def test_sites_missing_endpoint_config_is_500(client):
    with patch("repostlens.main.list_sites", AsyncMock(side_effect=RuntimeError("GSC_DB_ENDPOINT not set in environment"))):
        res = client.get("/api/sites")
    assert res.status_code == 500
    assert res.json()["error"] == "GSC_DB_ENDPOINT not set in environment"


def test_by_url_derives_site_and_defaults(client):
    query_page = AsyncMock(return_value=[{"page": "https://www.a.test/x"}])
    with patch("repostlens.main.query_page", query_page):
        res = client.post("/api/search/by-url", json={"page": " https://www.a.test/x \n"})

    assert res.status_code == 200
    assert res.json() == [{"page": "https://www.a.test/x"}]
    site, page, start_date, period = query_page.await_args.args
    assert site == "sc-domain:a.test"
    assert page == "https://www.a.test/x"
    assert len(start_date) == 10
    assert period == 14


def test_by_url_validation(client):
    cases = [
        ({"site": "s"}, "Missing site or page"),
        ({"site": "s", "page": "a.test/x"}, "Invalid page URL"),
        ({"site": "s", "page": "https://a.test/x", "periodDays": "abc"}, "Invalid periodDays, must be a positive number."),
        ({"site": "s", "page": "https://a.test/x", "periodDays": -3}, "Invalid periodDays, must be a positive number."),
        ({"site": "s", "page": "https://a.test/x", "startDate": "2025/01/01"}, "Invalid startDate, must be in YYYY-MM-DD format."),
    ]
    for body, message in cases:
        res = client.post("/api/search/by-url", json=body)
        assert res.status_code == 400, body
        assert res.json()["error"] == message


def test_by_url_keeps_fractional_period(client):
    query_page = AsyncMock(return_value=[])
    with patch("repostlens.main.query_page", query_page):
        client.post("/api/search/by-url", json={"site": "s", "page": "https://a.test/x", "periodDays": 0.5})
    assert query_page.await_args.args[3] == 0.5


def test_by_url_rejects_trailing_newline_in_start_date(client):
    res = client.post(
        "/api/search/by-url",
        json={"site": "s", "page": "https://a.test/x", "startDate": "2025-01-01\n"},
    )
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid startDate, must be in YYYY-MM-DD format."


def test_by_url_missing_page_without_site(client):
    res = client.post("/api/search/by-url", json={"page": "not-a-url"})
    assert res.status_code == 400
    assert res.json()["error"] == "Missing site or page"


def test_internal_links_clamps_and_accepts_query_alias(client):
    find = AsyncMock(return_value={"results": []})
    with patch("repostlens.main.find_internal_links", find):
        res = client.post(
            "/api/search/internal-links",
            json={"site": "sc-domain:a.test", "query": "東京", "periodDays": 1000, "limit": 50},
        )

    assert res.status_code == 200
    assert find.await_args.args == ("sc-domain:a.test", "東京")
    assert find.await_args.kwargs == {"start_date": None, "period_days": 365, "limit": 20}


def test_internal_links_defaults(client):
    find = AsyncMock(return_value={"results": []})
    with patch("repostlens.main.find_internal_links", find):
        client.post("/api/search/internal-links", json={"site": "s", "keyword": "k", "periodDays": "x"})
    assert find.await_args.kwargs["period_days"] == 180
    assert find.await_args.kwargs["limit"] == 5

    res = client.post("/api/search/internal-links", json={"site": "s"})
    assert res.json()["error"] == "Missing site or keyword"


# ----- analysis + history -----

def test_analyze_records_history(client):
    page = "https://holidaysmart.io/hk/article/555/x"
    analysis = {
        "success": True,
        "analysis": "Recommendation: NEW POST",
        "sections": {},
        "keywordsAnalyzed": 1,
    }
    analyze = AsyncMock(return_value=analysis)
    with patch("repostlens.main.analyze_page", analyze):
        res = client.post(
            "/api/optimize/analyze",
            json={"page": page, "bestQuery": "東京", "bestQueryClicks": 12, "rank4": "東京行程(click:1)"},
        )

    assert res.status_code == 200
    assert res.json() == analysis
    called_page, metrics = analyze.await_args.args
    assert called_page == page
    assert metrics["bestQuery"] == "東京"
    assert metrics["bestQueryClicks"] == 12
    assert metrics["rank4"] == "東京行程(click:1)"
    assert metrics["rankGt10"] is None

    history = client.get("/api/analyses", params={"page": page}).json()
    assert len(history) == 1
    assert history[0]["strategy"] == "NEW POST"
    assert history[0]["source"] == "analyze"
    assert history[0]["best_query"] == "東京"


def test_analyze_writes_history_off_the_event_loop(client):
    page = "https://holidaysmart.io/hk/article/556/x"
    analysis = {"success": True, "analysis": "Recommendation: REPOST", "sections": {}, "keywordsAnalyzed": 0}
    threadpool = AsyncMock(wraps=main.run_in_threadpool)
    with patch("repostlens.main.analyze_page", AsyncMock(return_value=analysis)), \
            patch("repostlens.main.run_in_threadpool", threadpool):
        res = client.post("/api/optimize/analyze", json={"page": page})

    assert res.status_code == 200
    assert threadpool.await_args.args[0] is main._record_run
    assert threadpool.await_args.kwargs["page"] == page
    assert client.get("/api/analyses", params={"page": page}).json()[0]["strategy"] == "REPOST"


def test_analyze_requires_page(client):
    res = client.post("/api/optimize/analyze", json={"bestQuery": "x"})
    assert res.status_code == 400
    assert res.json()["error"] == "Missing page"


def test_analyses_limit_is_clamped(client):
    res = client.get("/api/analyses", params={"limit": 0})
    assert res.status_code == 200
    assert len(res.json()) <= 1


# ----- reports -----

def test_outline_accepts_alias(client):
    with patch("repostlens.main.generate_outline", AsyncMock(return_value="h2 A")) as gen:
        res = client.post("/api/report/outline", json={"analysis": "text"})
    assert res.json() == {"success": True, "outline": "h2 A"}
    assert gen.await_args.args == ("text",)

    res = client.post("/api/report/outline", json={})
    assert res.status_code == 400
    assert res.json()["error"] == "Missing analyzeResult"


def test_outline_empty_reply_is_502(client):
    with patch("repostlens.main.generate_outline", AsyncMock(side_effect=UpstreamError("Empty outline"))):
        res = client.post("/api/report/outline", json={"analyzeResult": "text"})
    assert res.status_code == 502
    assert res.json() == {"success": False, "error": "Empty outline"}


def test_outline_batch_validation(client):
    res = client.post("/api/report/outline-batch", json={"items": []})
    assert res.status_code == 400
    assert res.json()["error"] == "No items provided"

    res = client.post("/api/report/outline-batch", json={"items": [{"analysisText": "x"}] * 11})
    assert res.status_code == 400
    assert res.json()["error"] == "Maximum 10 items per batch"


def _schema_error():
    try:
        ContextVectorResponse.model_validate({"suggestions": [{"before": "short"}]})
    except ValidationError as e:
        return e


def test_context_vector_bad_model_output_is_502(client):
    openai_client = MagicMock()
    openai_client.responses.parse = AsyncMock(side_effect=_schema_error())
    with patch("repostlens.services.context_vector.fetch_article_via_proxy", AsyncMock(return_value="<p>x</p>")), \
            patch("repostlens.services.llm_clients.get_openai_client", return_value=openai_client):
        res = client.post(
            "/api/report/context-vector",
            json={"analysisText": "x", "pageUrl": "https://holidaysmart.io/hk/article/1/x"},
        )

    assert res.status_code == 502
    body = res.json()
    assert body["success"] is False
    assert body["error"] == "Model output did not match ContextVectorResponse"
    assert "validation error" in body["body"]


def test_context_vector_validation(client):
    res = client.post("/api/report/context-vector", json={"analysisText": "x"})
    assert res.status_code == 400
    assert res.json()["error"] == "Missing pageUrl"

    # unknown property: the proxy site code cannot be derived
    res = client.post("/api/report/context-vector", json={"analysisText": "x", "pageUrl": "https://unknown.test/a"})
    assert res.status_code == 400
    assert res.json()["error"].startswith("Unknown site")


def test_email_report(client, english_analysis):
    res = client.post(
        "/api/report/email",
        json={
            "pageUrl": "https://holidaysmart.io/hk/article/1/x",
            "analysisText": english_analysis,
            "searchData": {"best_query": "東京自由行", "current_rank_5": "大阪(rank: 5, clicks: 3)"},
            "contextVector": "| a | b |\n|---|---|\n| c | d |",
        },
    )
    body = res.json()
    assert res.status_code == 200
    assert body["success"] is True
    assert "關鍵字優化提案：東京自由行" in body["html"]
    assert "大阪（排名 5 / 點擊 3）" in body["html"]
    assert "border-collapse:collapse" in body["html"]
    assert "建議優化現有文章" in body["text"]


def test_email_report_validation(client):
    res = client.post("/api/report/email", json={"analysisText": "x"})
    assert res.json()["error"] == "Missing pageUrl"
    res = client.post("/api/report/email", json={"pageUrl": "https://a.test"})
    assert res.json()["error"] == "Missing analysisText"


def test_extract_report(client, english_analysis):
    res = client.post(
        "/api/report/extract",
        json={"analysisText": english_analysis, "page": "https://a.test/x", "bestQuery": "東京自由行"},
    )
    body = res.json()
    assert body["data"]["strategy"] == "REPOST"
    assert body["markdown"].startswith("📊 *SEO 分析報告*")
    assert body["csv"].startswith("URL,Best Query")
    assert body["email"].startswith("Subject: SEO Analysis - 東京自由行 [REPOST]")


def test_email_fields_report(client, english_analysis):
    fields = {
        "subject": "S",
        "keyOpportunity": "K",
        "topActions": ["A"],
        "strategyInsight": "I",
        "immediateWin": None,
    }
    with patch("repostlens.main.generate_email_fields", AsyncMock(return_value=fields)):
        res = client.post("/api/report/email-fields", json={"analysis": english_analysis, "bestQuery": "kw"})
    body = res.json()
    assert body["success"] is True
    assert body["fields"] == fields
    assert body["email"].startswith("Subject: S")


def test_raw_csv_report(client):
    res = client.post("/api/report/csv", json={"page": "https://a.test/x", "bestQuery": "kw", "analysisText": "a,b"})
    assert res.json() == {"success": True, "csvContent": 'url,best_query,analysis\n"https://a.test/x","kw","a,b"'}


# ----- writing -----

def test_write_validation_messages(client):
    expectations = [
        ("/api/write/chat", {}, "Missing required field: paragraph or paragraphs"),
        ("/api/write/chat-and-structure", {}, "Missing required field: paragraph"),
        ("/api/write/description", {"analysisText": "a"},
         "Missing required fields: analysisText and outlineText are required"),
        ("/api/write/final-content", {"paragraphOutput": "p"},
         "Missing required fields: paragraphOutput and generateContentOutput are required"),
    ]
    for path, body, message in expectations:
        res = client.post(path, json=body)
        assert res.status_code == 400, path
        assert res.json() == {"success": False, "error": message}


def test_write_chat_single_paragraph(client):
    result = {"success": True, "results": [], "metadata": {}}
    with patch("repostlens.main.write_dialogues", AsyncMock(return_value=result)) as write:
        res = client.post("/api/write/chat", json={"paragraph": "段落"})
    assert res.json() == result
    assert write.await_args.args == (["段落"],)


# ----- keywords -----

def test_keyword_coverage(client):
    data = {
        "covered": [{"text": "a", "gsc": {"clicks": 1}}, {"text": "b", "gsc": {"clicks": 9}}],
        "uncovered": [{"text": "c"}, {"text": "d"}],
    }
    with patch("repostlens.main.fetch_keyword_coverage", AsyncMock(return_value=data)):
        res = client.post("/api/keyword/coverage", json={"url": "https://a.test/x", "limit": 3})
    body = res.json()
    assert body["success"] is True
    assert [k["text"] for k in body["covered"]] == ["b", "a"]
    assert [k["text"] for k in body["uncovered"]] == ["c"]
    assert body["debugId"]


def test_keyword_coverage_upstream_down(client):
    with patch("repostlens.main.fetch_keyword_coverage", AsyncMock(return_value=None)):
        res = client.post("/api/keyword/coverage", json={"url": "https://a.test/x"})
    body = res.json()
    assert res.status_code == 200
    assert body["success"] is False
    assert body["covered"] == [] and body["uncovered"] == []

    res = client.post("/api/keyword/coverage", json={})
    assert res.json()["error"] == "Missing url"


def test_keyword_suggestions(client):
    data = {"covered": [{"text": "a"}], "uncovered": [{"text": "b", "searchVolume": 10}]}
    with patch("repostlens.main.fetch_keyword_coverage", AsyncMock(return_value=data)), \
            patch("repostlens.main.request_suggestions", AsyncMock(return_value="1. 加入 b")) as suggest:
        res = client.post("/api/keyword/suggestions", json={"url": "https://a.test/x"})
    assert res.json()["suggestions"] == "1. 加入 b"
    assert suggest.await_args.args == (data["covered"], data["uncovered"])


def test_content_explorer(client):
    with patch("repostlens.main.fetch_content_explorer_for_queries", AsyncMock(return_value={"success": True})) as explore:
        res = client.post("/api/content-explorer", json={"queries": ["a", "", None, "b"]})
    assert res.json() == {"success": True}
    assert explore.await_args.args == (["a", "b"],)

    keywords = [{"text": "a", "searchVolume": 5}]
    with patch("repostlens.main.fetch_search_traffic_insights", AsyncMock(return_value={"success": True})) as insights:
        client.post("/api/content-explorer", json={"keywords": keywords})
    assert insights.await_args.args == (keywords,)

    res = client.post("/api/content-explorer", json={"queries": []})
    assert res.status_code == 400
    assert res.json()["error"] == "Missing queries"


# ----- metatag -----

def test_metatag_validation(client):
    res = client.post("/api/metatag", json={"page": "a.test/x", "site": "s"})
    assert res.json()["error"] == "Missing or invalid page URL."
    res = client.post("/api/metatag", json={"page": "https://a.test/x"})
    assert res.json()["error"] == "Missing site token."


def test_metatag_without_rows_is_404(client):
    with patch("repostlens.main.query_page", AsyncMock(return_value=[])):
        res = client.post("/api/metatag", json={"page": "https://a.test/x", "site": "sc-domain:a.test"})
    assert res.status_code == 404
    assert res.json() == {"success": False, "error": "No search performance data returned."}


def test_metatag_passes_benchmark_and_window(client):
    row = {"page": "https://a.test/x"}
    report = AsyncMock(return_value={"success": True, "report": "r"})
    with patch("repostlens.main.query_page", AsyncMock(return_value=[row])), \
            patch("repostlens.main.build_metatag_report", report):
        res = client.post(
            "/api/metatag",
            json={
                "page": "https://a.test/x",
                "site": "sc-domain:a.test",
                "startDate": "2025-02-01",
                "periodDays": "30",
                "targetCtr": 0.04,
            },
        )

    assert res.json() == {"success": True, "report": "r"}
    assert report.await_args.args == ("https://a.test/x", "sc-domain:a.test", row)
    kwargs = report.await_args.kwargs
    assert kwargs["start_date"] == "2025-02-01"
    assert kwargs["period_days"] == 30
    assert round(kwargs["ctr_benchmark"], 6) == 4.0


# ----- batch -----

def test_batch_process_records_successes(client):
    page = "https://holidaysmart.io/hk/article/777/x"
    results = {
        "success": True,
        "results": [
            {"success": True, "analysis": "Recommendation: REPOST", "suggestions": [{"before": "b"}], "outline": "h2 A"},
            {"success": False, "error": "boom", "analysis": "", "suggestions": [], "outline": ""},
        ],
    }
    with patch("repostlens.main.process_batch", AsyncMock(return_value=results)) as batch:
        res = client.post(
            "/api/batch-process",
            json={"batch": [
                {"url": page, "page": page, "bestQuery": "東京", "rank5": "r5"},
                {"url": "https://a.test/bad", "page": "https://a.test/bad"},
            ]},
        )

    assert res.json() == results
    items = batch.await_args.args[0]
    assert items[0]["bestQuery"] == "東京"
    assert items[0]["rank5"] == "r5"

    history = client.get("/api/analyses", params={"page": page}).json()
    assert len(history) == 1
    assert history[0]["source"] == "batch"
    assert history[0]["outline"] == "h2 A"
    assert history[0]["suggestions"] == [{"before": "b"}]
    assert client.get("/api/analyses", params={"page": "https://a.test/bad"}).json() == []


def test_batch_process_validation(client):
    item = {"url": "https://a.test/x", "page": "https://a.test/x"}
    res = client.post("/api/batch-process", json={"batch": [item] * 11})
    assert res.status_code == 400
    assert res.json()["error"] == "Maximum 10 items per batch"

    res = client.post("/api/batch-process", json={})
    assert res.status_code == 400
    assert res.json()["success"] is False


# ----- google chat -----

def test_send_analysis(client):
    res = client.post("/api/chat/send-analysis", json={})
    assert res.status_code == 400
    assert res.json()["error"] == "Missing analysis"

    res = client.post("/api/chat/send-analysis", json={"analysis": "Recommendation: REPOST"})
    assert res.status_code == 500
    assert res.json()["error"] == "Google Chat webhook URL not configured"


def test_test_webhook_unconfigured(client):
    res = client.post("/api/chat/test-webhook")
    assert res.status_code == 200
    assert res.json()["configured"] is False


# ----- csv -----

def test_custom_csv_convert(client):
    csv_text = (
        "Keyword,Current URL,Current position,Current organic traffic,Volume\n"
        "東京,https://a.test/hk/article/1,5,20,100\n"
    )
    res = client.post("/api/custom-csv/convert", json={"csv": csv_text})
    body = res.json()
    assert body["success"] is True
    assert body["count"] == 1
    assert body["rows"][0]["best_query"] == "東京"
    assert body["rows"][0]["potential_traffic"] == 20

    res = client.post("/api/custom-csv/convert", json={"csv": "  "})
    assert res.json()["error"] == "Missing csv"
