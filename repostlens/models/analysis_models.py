from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from datetime import datetime
from repostlens.db.engine import Base


class AnalysisRun(Base):
    """
    One generated analysis for a page.

    Written by /api/optimize/analyze (source="analyze") and by every
    successful /api/batch-process item (source="batch").
    """

    __tablename__ = "analysis_runs"

    id = Column(Integer, primary_key=True, index=True)
    page = Column(String, nullable=False, index=True)
    best_query = Column(String, nullable=True)

    # "REPOST" or "NEW POST", parsed from the analysis text
    strategy = Column(String, nullable=False, default="REPOST")
    source = Column(String, nullable=False, default="analyze")
    model_used = Column(String, nullable=True)

    analysis = Column(Text, nullable=False)
    outline = Column(Text, nullable=True)
    suggestions = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
