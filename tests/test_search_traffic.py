from unittest.mock import AsyncMock, patch

import pytest

from repostlens.services import search_traffic as st


def test_parse_human_number():
    assert st.parse_human_number("3.7M") == 3_700_000
    assert st.parse_human_number("146.5K") == 146_500
    assert st.parse_human_number("2B") == 2_000_000
    assert st.parse_human_number("20+") == 20
    assert st.parse_human_number("N/A") is None
    assert st.parse_human_number("") is None


def test_to_number_or_none():
    assert st.to_number_or_none(7) == 7.0
    assert st.to_number_or_none("DA 91") == 91.0
    assert st.to_number_or_none("n/a") is None
    assert st.to_number_or_none(None) is None


@pytest.mark.parametrize(
    "target, expected",
    [
        ("https://www.moj.gov.tw/x", "gov"),
        ("harvard.edu", "edu"),
        ("https://www.bbc.co.uk/news", "news"),
        ("https://blog.example.com/post", "blog"),
        ("https://example.com/blog/post", "blog"),
        ("shopee.tw", "retail"),
        ("https://www.reddit.com/r/japantravel", "forum"),
        ("youtube.com", "media"),
        ("https://example.com", "other"),
        (None, "other"),
    ],
)
def test_classify_site_type(target, expected):
    assert st.classify_site_type(target) == expected


def test_extract_hostname():
    assert st.extract_hostname("https://WWW.Example.com/path") == "www.example.com"
    assert st.extract_hostname("example.com/a") == "example.com"
    assert st.extract_hostname("N/A") == ""


def test_page_score():
    item = {"domainAuthority": 50, "backlinks": 99, "topOffset": 0}
    assert st.page_score(item, 100) == pytest.approx(90)
    # unknown offset counts as the worst position
    assert st.page_score({"domainAuthority": 10, "backlinks": 0, "topOffset": None}, 100) == pytest.approx(10)


def test_average_rounds_and_skips_missing():
    assert st.average([1, 2, None]) == 1.5
    assert st.average([1, 2, 2]) == 1.67
    assert st.average([None]) is None


def test_query_insight_ranks_pages():
    data = {
        "count": 12,
        "results": [
            {"title": "Weak", "url": "https://small.example/a", "domainAuthority": "10", "backlinks": "5",
             "topOffset": 900},
            {"title": "N/A", "url": "https://www.bbc.co.uk/travel", "domainAuthority": "94",
             "backlinks": "3.7M", "topOffset": 100},
            {"title": "No url", "url": "N/A", "domain": "N/A"},
        ],
    }
    insight = st.build_query_insight("東京", data)

    assert insight["count"] == 12
    assert insight["bestPage"]["domain"] == "www.bbc.co.uk"
    assert insight["bestPage"]["title"] == "https://www.bbc.co.uk/travel"
    assert len(insight["topPages"]) == 2
    assert insight["siteTypes"]["news"] == 1
    assert insight["siteTypes"]["other"] == 2
    assert insight["avgDomainAuthority"] == 52.0


def test_pick_top3_queries_by_sv():
    keywords = [
        {"text": "a", "searchVolume": 10},
        {"text": "b", "searchVolume": 300},
        {"text": "c", "searchVolume": 0},
        {"text": "d", "searchVolume": 200},
        {"text": "e", "searchVolume": 100},
        {"searchVolume": 999},
    ]
    assert st.pick_top3_queries_by_sv(keywords) == ["b", "d", "e"]


@pytest.mark.asyncio
async def test_content_explorer_limits_queries_and_tolerates_failures():
    serp = {
        "success": True,
        "count": 1,
        "results": [{"url": "https://www.reddit.com/r/x", "domainAuthority": 90, "backlinks": "1K", "topOffset": 0}],
    }
    fetch = AsyncMock(side_effect=[serp, None, serp])
    with patch.object(st, "fetch_serp", fetch):
        result = await st.fetch_content_explorer_for_queries(["q1", "q2", "q3", "q4"])

    assert fetch.await_count == 3
    assert result["success"] is True
    assert result["pickedQueries"] == ["q1", "q2", "q3"]
    assert result["insights"][1]["count"] == 0
    assert result["insights"][1]["bestPage"] is None
    assert result["overall"]["siteTypes"]["forum"] == 2
    assert result["overall"]["bestPage"]["domain"] == "www.reddit.com"


@pytest.mark.asyncio
async def test_fetch_serp_prefers_merged_results():
    payload = {"success": True, "results": [{"url": "a"}], "merged_results": [{"url": "b"}]}
    with patch.object(st, "get_json", AsyncMock(return_value=payload)) as get_json:
        data = await st.fetch_serp("東京 自由行")

    assert data["results"] == [{"url": "b"}]
    url = get_json.await_args.args[0]
    assert url == "https://gsc.test/search?query=%E6%9D%B1%E4%BA%AC%20%E8%87%AA%E7%94%B1%E8%A1%8C"
    assert get_json.await_args.kwargs["headers"] == st.NGROK_HEADERS


@pytest.mark.asyncio
async def test_fetch_serp_requires_success_flag():
    with patch.object(st, "get_json", AsyncMock(return_value={"success": False, "results": [1]})):
        assert await st.fetch_serp("q") is None
