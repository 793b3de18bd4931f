# writer.py

import asyncio
import logging
import re
from typing import Any, Dict, List

from repostlens import config
from repostlens.services.llm_clients import chat_complete, vertex_generate
from repostlens.services.upstream import UpstreamError

log = logging.getLogger(__name__)

SEPARATOR_LINE_RE = re.compile(r"^---+\s*$", re.MULTILINE)
H2_SPLIT_RE = re.compile(r"(?=h2\s)", re.IGNORECASE)
BLANK_LINE_RE = re.compile(r"\n\s*\n")


DIALOGUE_PROMPT = """你是話題討論專家

# 核心思考
避免寫得像是 AI。

# 任務目標
根據提供的主題，設計兩位台灣人物的自然對話討論其中的話題（不是怎麼寫的話題）。

## 寫作方式
- 閱讀提供的 paragraph 主題：{paragraph}
- 設計兩位台灣人物的對話討論

### 規範
- 需研究主題，捕捉與主題及細節緊密相關的內容，包括觀眾感興趣的問題陳述、生活困境（relatable struggles）、與觸動人心的高光時刻（worthy moments）
- 對話須由兩位台灣人物組成，內容必須平實、親切、中性用語，避免偏頗
- 每個主題須有獨立的對話設定及對話內容
- 對話討論須真實自然，避免條列分點；需用簡單對白並直白說明內容，且不冗長
- 對話反映實際生活細膩描述，呼應普遍關心的話題與細節
- 不需提供購買需求角度，應聚焦於人物互動、細膩感受和理解

### 對話內容設定
1. 兩位台灣人物，性別不限
2. 用語保持中性、親民易懂
3. 聚焦於受眾關心的話題（來自社群、真實需求）

### 品牌設置
品牌與受眾設定：由你決定最適合的品牌設定

討論時，要知道品牌用戶喜歡聽什麼（來自問問大家的想法，這樣才能對話，才是清晰、有趣且貼心），而不是購物需求偏好。

## 輸出格式要求
主題：討論的主題名稱
對話人物設定：兩人物設定
對話內容：兩人對話內容
品牌受眾研究：品牌／受眾觀察洞察（選填）

對話內容建議長一些，要模擬真實對話，不要列點。
要使用簡單、對話、直白的敘述。
利用對話中的細節說出他們的心聲。
保持一般的討論，不要變成社論。

---
請直接輸出對話內容，不需要列出執行步驟或自我檢查說明。
"""

STRUCTURE_PROMPT = """你試試寫這一段，寫法是先想像兩個人物對談，再將資訊加工，整理成適合 SEO 的脈絡格式（問題陳述，嚴重性，解決方案）。
輸出對談與整理結果
對話的是兩個台灣人
語言不要有偏好，要使用中性的字眼，通俗易懂
每個題目都要單獨有自己的對談，最後整理的資訊，都不冗長，直接說明
討論時，要避免使用品牌客戶不喜歡的方式
要知道品牌用戶的大家喜歡聽什麼？（來自問問大家的想法，這樣才能對話，才是清晰、有趣且貼心）
品牌客戶：{brand}
請確保最後『對話內容整理』的用詞與邏輯順序，能反映（或呼應）前方『對話內容』的鋪陳。讓整理結果看起來像是從人物對話中直接提煉的重點。

段落設計：{paragraph}

你會寫：
主題：
對話人物設定：
對話內容：
品牌受眾研究：
對話內容整理：
---

在對話內容整理中，你會寫
### 問題陳述
...
### 嚴重性
...
### 解決方案
...
"""

DESCRIPTION_PROMPT = """你是資深的內容行銷廣告設計師

目標設定如此：{analysis}

----
把大綱中的每一段h2h3要寫什麼，用一段話說明在[...]內，需要能幫我排名 SEO
detailing its content.

不要有語言/地區偏好，使用中性的用詞

問自己：
- 你的內容主要是寫給誰看的？了解他們是誰，才能寫出他們感興趣的內容。
- 你希望讀者看完後做什麼？是為了提升網站流量、提高某個關鍵字的搜尋排名、獲得更多的銷售機會，還是單純建立品牌形象？
- 為了達到你的目標，文章裡必須包含哪些重要的資訊、賣點、或數據？
- 你希望品牌給人什麼樣的感覺？這會決定你用字遣詞的方式。

[...]內的文字，要思考具有行銷效果的呈現方式，不要只是簡單條列式

你的輸出不應該包含分析內容，應該維持原本的h2h3不改

SEO 的理由可能包括以下，但不限於：
同時向搜尋引擎清晰展示頁面的完整結構與層次，提升使用者體驗與爬蟲抓取效率。
核心搜尋意圖，爭取在搜尋結果頁面（SERP）中成為 Google 的精選摘要（Featured Snippet）。
類高意圖的長尾關鍵字查詢
豐富內容的語義詞彙，提升使用者在頁面的停留時間，展示頁面的權威性。
直接回應關鍵字的查詢，並強調內容特徵的重要性
...

以下是 outline:
{outline}

output format:
h2 xxx
h3 xxx
[...]
h3 xxx
[...]
"""

FINAL_CONTENT_PROMPT = """你是一位專業的內容編輯，現在需要根據以下資料撰寫最終的文章段落。

參考資料：

【原始段落大綱】
{paragraph_output}

【AI 生成的對話內容與結構】
{generated}

---

任務要求：
1. 請盡量使用「AI 生成的對話內容與結構」中的內容作為主要素材
2. 將對話內容轉化為流暢的文章段落
3. 保留對話中的重點資訊、數據、例子
4. 使用 Markdown 格式撰寫
5. 只輸出文章內容，不要包含任何分析、註解或說明
6. 保持語氣自然、易讀
7. 確保內容完整且有邏輯性

請直接輸出 Markdown 格式的文章段落："""


async def _dialogue_item(index: int, paragraph: Any) -> Dict[str, Any]:
    if not isinstance(paragraph, str) or not paragraph.strip():
        return {"index": index, "success": False, "error": "Empty paragraph", "content": ""}
    try:
        content = await vertex_generate(DIALOGUE_PROMPT.format(paragraph=paragraph))
        if not content:
            raise UpstreamError("Failed to generate content")
    except Exception as e:
        log.warning("Dialogue for paragraph %d failed: %s", index + 1, e)
        return {"index": index, "success": False, "error": str(e) or "Processing error", "content": ""}

    log.info("Paragraph %d processed: %d chars", index + 1, len(content))
    return {
        "index": index,
        "success": True,
        "content": content,
        "metadata": {"paragraphLength": len(paragraph), "contentLength": len(content)},
    }


async def write_dialogues(paragraphs: List[Any]) -> Dict[str, Any]:
    """Rewrite every paragraph as a two-person dialogue, concurrently."""
    if not paragraphs:
        raise ValueError("Missing required field: paragraph or paragraphs")

    results = list(await asyncio.gather(*(_dialogue_item(i, p) for i, p in enumerate(paragraphs))))
    success_count = sum(1 for r in results if r["success"])
    total_length = sum(r.get("metadata", {}).get("contentLength", 0) for r in results)
    log.info("Dialogue batch completed: %d/%d successful", success_count, len(results))

    return {
        "success": True,
        "results": results,
        "metadata": {
            "totalParagraphs": len(paragraphs),
            "successCount": success_count,
            "totalContentLength": total_length,
            "model": config.VERTEXAI_TEXT_MODEL,
        },
    }


async def write_chat_and_structure(paragraph: str, brand: str = "") -> Dict[str, Any]:
    if not paragraph:
        raise ValueError("Missing required field: paragraph")

    content = await chat_complete(STRUCTURE_PROMPT.format(brand=brand, paragraph=paragraph))
    if not content:
        raise UpstreamError("Failed to generate chat and structure content")

    return {
        "success": True,
        "content": content,
        "metadata": {
            "brand": brand,
            "paragraphLength": len(paragraph),
            "contentLength": len(content),
            "model": config.DEFAULT_LLM_MODEL,
        },
    }


def split_description_paragraphs(content: str) -> List[str]:
    """
    h2 sections first (only when there is more than one worth keeping),
    then blank-line blocks, then the whole text as one paragraph.
    """
    sections = [s.strip() for s in H2_SPLIT_RE.split(content) if len(s.strip()) > 50]
    if len(sections) > 1:
        return sections
    blocks = [b.strip() for b in BLANK_LINE_RE.split(content) if len(b.strip()) > 100]
    if len(blocks) > 1:
        return blocks
    return [content]


async def write_description(analysis: str, outline: str) -> Dict[str, Any]:
    if not analysis or not outline:
        raise ValueError("Missing required fields: analysisText and outlineText are required")

    generated = await chat_complete(DESCRIPTION_PROMPT.format(analysis=analysis, outline=outline))
    if not generated:
        raise UpstreamError("Failed to generate content description")

    cleaned = SEPARATOR_LINE_RE.sub("", generated).strip()
    paragraphs = split_description_paragraphs(cleaned)
    log.info("Description split into %d paragraphs", len(paragraphs))

    return {
        "success": True,
        "content": cleaned,
        "description": cleaned,
        "paragraphs": paragraphs,
        "metadata": {
            "totalParagraphs": len(paragraphs),
            "contentLength": len(cleaned),
            "model": config.DEFAULT_LLM_MODEL,
        },
    }


async def write_final_content(paragraph_output: str, generated_output: str) -> Dict[str, Any]:
    if not paragraph_output or not generated_output:
        raise ValueError(
            "Missing required fields: paragraphOutput and generateContentOutput are required"
        )

    final = await chat_complete(
        FINAL_CONTENT_PROMPT.format(paragraph_output=paragraph_output, generated=generated_output)
    )
    if not final:
        raise UpstreamError("Failed to generate final content")

    return {
        "success": True,
        "content": final,
        "finalContent": final,
        "metadata": {
            "contentLength": len(final),
            "paragraphOutputLength": len(paragraph_output),
            "generateContentOutputLength": len(generated_output),
            "model": config.DEFAULT_LLM_MODEL,
        },
    }
