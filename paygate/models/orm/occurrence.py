from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from .base import Base


class RuleOccurrenceORM(Base):
    """One row per time a rule fired for real (non-preemptive evaluation)."""

    __tablename__ = "rule_occurrences"

    id = Column(Integer, primary_key=True, autoincrement=True)

    occurrence_key = Column(String, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
