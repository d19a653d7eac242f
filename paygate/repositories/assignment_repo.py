# repositories/assignment_repo.py
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from paygate.models.orm.assignment import ConfirmedAssignmentORM
from paygate.models.schemas.experiment import Variant


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, experiment_id: str) -> Optional[ConfirmedAssignmentORM]:
        """Retrieves the confirmed assignment for an experiment."""
        return self.db.get(ConfirmedAssignmentORM, experiment_id)

    def get_all_assignments(self) -> list[ConfirmedAssignmentORM]:
        stmt = select(ConfirmedAssignmentORM).order_by(ConfirmedAssignmentORM.experiment_id)

        return list(self.db.scalars(stmt).all())

    def create_assignment(self, experiment_id: str, variant: Variant) -> ConfirmedAssignmentORM:
        """
        Creates a confirmed assignment record.
        Note: The AssignmentStore must ensure this isn't a duplicate.
        """
        try:
            db_assignment = ConfirmedAssignmentORM(
                experiment_id=experiment_id,
                variant_id=variant.id,
                variant_type=variant.type.value,
                paywall_id=variant.paywall_id,
                confirmed_at=datetime.utcnow(),
            )

            self.db.add(db_assignment)
            self.db.commit()
            self.db.refresh(db_assignment)

            return db_assignment

        except IntegrityError:
            self.db.rollback()
            raise ValueError(f"Assignment already confirmed for experiment {experiment_id}.")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred confirming assignment: {e}")

    def delete_all_assignments(self) -> int:
        try:
            result = self.db.execute(delete(ConfirmedAssignmentORM))
            self.db.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred clearing assignments: {e}")
