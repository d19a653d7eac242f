from datetime import datetime

from sqlalchemy import Column, DateTime, String

from .base import Base


class ConfirmedAssignmentORM(Base):
    """Durable experiment -> variant binding. One row per experiment."""

    __tablename__ = "confirmed_assignments"

    experiment_id = Column(String, primary_key=True, index=True)

    variant_id = Column(String, nullable=False)
    # "holdout" or "treatment"
    variant_type = Column(String, nullable=False)
    paywall_id = Column(String, nullable=True)

    confirmed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
