from datetime import date

from repostlens.services import email_builder as eb
from repostlens.services.context_vector import EMPTY_TABLE


def test_parse_rank_keyword_line():
    entry = eb.parse_rank_keyword_line("東京自由行(rank: 4, clicks: 12, impressions: 300, SV: 1900)")
    assert entry == {
        "keyword": "東京自由行",
        "rank": 4.0,
        "clicks": 12.0,
        "impressions": 300.0,
        "searchVolume": 1900.0,
        "raw": "東京自由行(rank: 4, clicks: 12, impressions: 300, SV: 1900)",
    }
    assert eb.parse_rank_keyword_line("  ") is None
    assert eb.parse_rank_keyword_line(None) is None


def test_normalize_api_analysis_prefers_explicit_lists():
    api = {"topRankKeywords": [{"keyword": "a"}], "rankKeywords": [], "bestQueryPosition": "2.5"}
    normalized = eb.normalize_api_analysis(api, {"current_rank_1": "ignored(rank: 1)"})
    assert normalized["topRankKeywords"] == [{"keyword": "a"}]
    assert normalized["bestQueryPosition"] == 2.5
    assert normalized["bestQueryClicks"] is None


def test_normalize_api_analysis_from_search_row():
    normalized = eb.normalize_api_analysis(
        None,
        {
            "current_rank_1": "東京(rank: 1, clicks: 40)",
            "current_rank_5": "大阪(rank: 5, clicks: 3)",
            "best_query_clicks": "40",
        },
    )
    assert [k["keyword"] for k in normalized["topRankKeywords"]] == ["東京"]
    assert [k["keyword"] for k in normalized["rankKeywords"]] == ["大阪"]
    assert normalized["bestQueryClicks"] == 40.0


def test_format_keyword_with_metrics():
    assert eb.format_keyword_with_metrics("kw", {"rank": 4.4, "clicks": 1234}) == "kw（排名 4 / 點擊 1,234）"
    assert eb.format_keyword_with_metrics("kw", {}) == "kw"


def test_collect_keyword_entries_dedupes_case_insensitively():
    api = {
        "topRankKeywords": [{"keyword": "Tokyo", "rank": 1, "clicks": 50}, {"keyword": "kyoto", "rank": 2}],
        "rankKeywords": [{"keyword": "KYOTO", "rank": 6}, {"keyword": "osaka", "rank": 7}],
        "bestQueryPosition": 9,
        "bestQueryClicks": 1,
    }
    top, related = eb.collect_keyword_entries("tokyo", api)

    # the best query takes its stats from the matching top keyword
    assert top == ["tokyo（排名 1 / 點擊 50）", "kyoto（排名 2）"]
    assert related == ["osaka（排名 7）"]


def test_collect_keyword_entries_uses_fallback_stats():
    top, related = eb.collect_keyword_entries(
        "東京", {"topRankKeywords": [], "rankKeywords": [], "bestQueryPosition": 3, "bestQueryClicks": 20}
    )
    assert top == ["東京（排名 3 / 點擊 20）"]
    assert related == []


def test_markdown_table_to_html_escapes_cells():
    html = eb.markdown_table_to_html("| a | b |\n|:---|:---|\n| <x> | y |")
    assert "<th" in html and ">a</th>" in html
    assert "&lt;x&gt;" in html
    assert eb.markdown_table_to_html("no table here") is None


def test_render_context_vector_variants():
    assert "目前沒有額外建議。" in eb.render_context_vector("")
    assert "<table" in eb.render_context_vector(EMPTY_TABLE)

    html = eb.render_context_vector("intro <b>\n- **粗體** 項目\n- second<br> line")
    assert "&lt;b&gt;" in html
    assert "<strong>粗體</strong>" in html
    assert "second<br /> line" in html
    assert html.count("<li") == 2


def test_build_email_html_and_text():
    analysis = "### Essential Element: 行程比較\n\nRecommendation: NEW POST"
    html = eb.build_email_html(
        "https://holidaysmart.io/hk/article/1/x?a=1&b=2",
        "<東京>",
        analysis,
        {"topRankKeywords": [], "rankKeywords": [{"keyword": "大阪", "rank": 6}]},
        context_vector="- 加入比較表",
        outline="h2 行程\nh3 <第一天>",
        today=date(2025, 3, 9),
    )

    assert "關鍵字優化提案：&lt;東京&gt;" in html
    assert "建議新增文章" in html
    assert "核心機會：行程比較" in html
    assert "?a=1&amp;b=2" in html
    assert "大阪（排名 6）" in html
    assert "建議文章大綱" in html
    assert "h3 &lt;第一天&gt;" in html
    assert "2025/3/9" in html
    assert "© 2025 PressLogic · RepostLens" in html

    text = eb.html_to_text(html)
    assert "關鍵字優化提案：<東京>" in text
    assert "data:image" not in text
    assert "加入比較表" in text


def test_build_email_html_without_best_query_or_outline():
    html = eb.build_email_html("https://a.test/x", "", "plain analysis", {}, today=date(2025, 1, 1))
    assert ">關鍵字優化提案</h1>" in html
    assert "建議優化現有文章" in html
    assert "建議文章大綱" not in html
    assert html.count(">無</p>") == 2
