from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paygate.models.orm.occurrence import RuleOccurrenceORM


class OccurrenceRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def count_occurrences(self, occurrence_key: str, since: Optional[datetime] = None) -> int:
        """
        Counts how many times a rule fired, optionally only from `since` onwards.
        """
        stmt = select(func.count(RuleOccurrenceORM.id)).where(
            RuleOccurrenceORM.occurrence_key == occurrence_key
        )

        if since is not None:
            stmt = stmt.where(RuleOccurrenceORM.created_at >= since)

        return self.db.scalar(stmt) or 0

    def create_occurrence(self, occurrence_key: str) -> RuleOccurrenceORM:
        db_occurrence = RuleOccurrenceORM(
            occurrence_key=occurrence_key, created_at=datetime.utcnow()
        )
        try:
            self.db.add(db_occurrence)
            self.db.commit()
            self.db.refresh(db_occurrence)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred recording occurrence: {e}")

        return db_occurrence
