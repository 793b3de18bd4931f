import os
import tempfile

# Settings are read at import time, so they have to be in place first
_db_dir = tempfile.mkdtemp(prefix="repostlens-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["GSC_DB_ENDPOINT"] = "https://gsc.test"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["GOOGLE_CHAT_WEBHOOK_URL"] = ""

import pytest
from fastapi.testclient import TestClient

from repostlens.main import app


@pytest.fixture()
def client():
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


ENGLISH_ANALYSIS = """## Search Characteristic Analysis
Users compare itineraries before booking.

## Core Hijacking Strategy
### Essential Element: 行程天數比較
**Hijacking Statement**: 2025 東京自由行全攻略

## Implementation Priority
### Immediate Actions:
- Rename the H1 to include 東京自由行
- Add an FAQ block about 東京 行程

### Optional Enhancements
- Link to the hotel guide

### Strategy Decision
Recommendation: REPOST
"""

CHINESE_ANALYSIS = """### 策略判斷
建議（NEW POST）

本文無法處理 [東京住宿] 的搜尋意圖，建議撰寫新文章主題「東京住宿區域全解析」。

實施優先級
短期優化（一週內）
- 新增住宿區域比較表
- 補充交通時間資訊
語義劫持布局（一個月內）
- 建立新宿與銀座的對照段落
必備執行項目
1. 撰寫新文章並互相連結
實施方式：NEW POST
"""


@pytest.fixture()
def english_analysis():
    return ENGLISH_ANALYSIS


@pytest.fixture()
def chinese_analysis():
    return CHINESE_ANALYSIS
