from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from repostlens.services import analysis_extractor as ae


PAGE = "https://holidaysmart.io/hk/article/12345/tokyo"


def test_determine_strategy_defaults_to_repost():
    assert ae.determine_strategy("") == "REPOST"
    assert ae.determine_strategy("nothing decided here") == "REPOST"


def test_determine_strategy_reads_recommendation():
    assert ae.determine_strategy("Recommendation: new post") == "NEW POST"
    assert ae.determine_strategy("實施方式：REPOST") == "REPOST"


def test_extract_english_layout(english_analysis):
    data = ae.extract_analysis_data(english_analysis, PAGE, "東京自由行")

    assert data["page"] == PAGE
    assert data["bestQuery"] == "東京自由行"
    assert data["strategy"] == "REPOST"
    assert data["priority"]["shortTerm"] == [
        "Rename the H1 to include 東京自由行",
        "Add an FAQ block about 東京 行程",
    ]
    assert data["priority"]["semanticHijack"] == ["Link to the hotel guide"]
    assert data["executionList"] == data["priority"]["shortTerm"]
    assert data["bestOpportunity"] == "行程天數比較"
    assert data["titleSuggestion"] == "2025 東京自由行全攻略"
    assert "newPostTopic" not in data


def test_extract_chinese_layout(chinese_analysis):
    data = ae.extract_analysis_data(chinese_analysis, PAGE, None)

    assert data["bestQuery"] == "Unknown Query"
    assert data["strategy"] == "NEW POST"
    assert data["priority"]["shortTerm"] == ["新增住宿區域比較表", "補充交通時間資訊"]
    assert data["priority"]["semanticHijack"] == ["建立新宿與銀座的對照段落"]
    assert data["executionList"] == ["撰寫新文章並互相連結"]
    assert data["titleSuggestion"] == "東京住宿區域全解析"
    assert data["newPostTopic"] == "東京住宿"


def test_list_items_skip_na_and_headings():
    text = "# heading\n- keep me\n- N/A\n2. numbered\n三、中文編號"
    assert ae.extract_list_items(text) == ["keep me", "numbered", "中文編號"]


def test_paragraph_fallback_splits_sentences():
    items = ae.extract_paragraph_items("這是第一個足夠長的建議句子。短句。這是第二個足夠長的建議句子")
    assert items == ["這是第一個足夠長的建議句子。", "這是第二個足夠長的建議句子。"]


def test_markdown_uses_taipei_time(english_analysis):
    data = ae.extract_analysis_data(english_analysis, PAGE, "東京自由行")
    text = ae.format_as_markdown(data, now=datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc))

    assert text.startswith("📊 *SEO 分析報告*")
    assert "• Rename the H1 to include 東京自由行" in text
    assert "1. Rename the H1 to include 東京自由行" in text
    assert '*📰 標題建議:* "2025 東京自由行全攻略"' in text
    assert text.endswith("⏰ 2025/01/01 08:00:00")


def test_csv_summary_row(english_analysis):
    data = ae.extract_analysis_data(english_analysis, PAGE, "東京自由行")
    header, row = ae.format_as_csv(data).split("\n")

    assert header == "URL,Best Query,Strategy,Core Action,Opportunity,Title Suggestion"
    assert row.startswith(f"{PAGE},東京自由行,REPOST,Rename the H1")


def test_raw_csv_quotes_everything():
    content = ae.format_raw_csv("https://a.test/x", "kw", 'line one\nsaid "hi"')
    assert content == 'url,best_query,analysis\n"https://a.test/x","kw","line one\nsaid ""hi"""'


def test_parse_email_xml():
    reply = """<email_fields>
  <subject>Win 東京 traffic</subject>
  <key_opportunity>Own the itinerary query.</key_opportunity>
  <top_actions>Rename H1 | Add FAQ |</top_actions>
  <strategy_insight>Intent already matches.</strategy_insight>
</email_fields>"""
    fields = ae.parse_email_xml(reply)

    assert fields == {
        "subject": "Win 東京 traffic",
        "keyOpportunity": "Own the itinerary query.",
        "topActions": ["Rename H1", "Add FAQ"],
        "strategyInsight": "Intent already matches.",
        "immediateWin": None,
    }
    assert ae.parse_email_xml("<subject>only</subject>") is None


def test_email_prefers_llm_fields(english_analysis):
    data = ae.extract_analysis_data(english_analysis, PAGE, "東京自由行")
    fields = {
        "subject": "Custom subject",
        "keyOpportunity": "Own it",
        "topActions": ["Do one thing"],
        "strategyInsight": "Because",
        "immediateWin": "Ship today",
    }
    email = ae.format_as_email(data, fields, now=datetime(2025, 1, 1, tzinfo=timezone.utc))

    assert email.startswith("Subject: Custom subject\n---")
    assert "Key Opportunity: Own it" in email
    assert "🎯 **Quick Win**: Ship today" in email
    assert "1. Do one thing" in email
    assert 'Hijacking Statement: "2025 東京自由行全攻略"' in email
    assert email.endswith("Generated: 2025/01/01 08:00:00")


def test_email_default_subject(english_analysis):
    data = ae.extract_analysis_data(english_analysis, PAGE, "東京自由行")
    email = ae.format_as_email(data)
    assert email.startswith("Subject: SEO Analysis - 東京自由行 [REPOST]")
    # execution list equals the immediate actions, so no separate section
    assert "## 📝 Execution Items" not in email


def test_split_sections(english_analysis):
    sections = ae.split_sections(english_analysis)
    assert sections["quickWins"].startswith("## Search Characteristic Analysis")
    assert "Essential Element" in sections["paragraphAdditions"]
    assert sections["structuralChanges"].startswith("## Implementation Priority")
    assert sections["rawAnalysis"] == english_analysis


@pytest.mark.asyncio
async def test_generate_email_fields_returns_none_on_llm_error(english_analysis):
    data = ae.extract_analysis_data(english_analysis, PAGE, "東京自由行")
    with patch.object(ae, "chat_complete", AsyncMock(side_effect=RuntimeError("down"))):
        assert await ae.generate_email_fields(data, english_analysis) is None


@pytest.mark.asyncio
async def test_generate_email_fields_parses_reply(english_analysis):
    data = ae.extract_analysis_data(english_analysis, PAGE, "東京自由行")
    reply = (
        "<subject>S</subject><key_opportunity>K</key_opportunity>"
        "<top_actions>A|B</top_actions><strategy_insight>I</strategy_insight>"
        "<immediate_win>W</immediate_win>"
    )
    mock = AsyncMock(return_value=reply)
    with patch.object(ae, "chat_complete", mock):
        fields = await ae.generate_email_fields(data, english_analysis)

    assert fields["topActions"] == ["A", "B"]
    assert fields["immediateWin"] == "W"
    assert mock.await_args.kwargs["temperature"] == 0.3
