# services/assignment_store.py
import asyncio
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from paygate.core.logging import get_logger
from paygate.models.orm.assignment import ConfirmedAssignmentORM
from paygate.models.schemas.experiment import (
    AssignmentModel,
    ConfirmableAssignment,
    Variant,
    VariantType,
)
from paygate.repositories.assignment_repo import AssignmentRepository
from paygate.services.keyed_locks import KeyedLocks

logger = get_logger(__name__)


def _variant_from_row(row: ConfirmedAssignmentORM) -> Variant:
    return Variant(
        id=row.variant_id,
        type=VariantType(row.variant_type),
        paywall_id=row.paywall_id,
    )


class AssignmentStore:
    """
    Confirmed and unconfirmed experiment -> variant assignments.

    The confirmed map is durable (one row per experiment) and only ever written
    through `confirm`. The unconfirmed map lives in memory and is replaced
    wholesale by config sync. Access is serialized per experiment id so a
    read-then-confirm sequence cannot interleave with a replacement touching
    the same id. Database work runs in worker threads so the event loop is
    never blocked.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._unconfirmed: Dict[str, Variant] = {}
        self._locks = KeyedLocks()

    # --- Durable side (runs in worker threads) ---

    def _read_confirmed(self) -> Dict[str, Variant]:
        with self.session_factory() as db:
            rows = AssignmentRepository(db).get_all_assignments()
            return {row.experiment_id: _variant_from_row(row) for row in rows}

    def _read_confirmed_variant(self, experiment_id: str) -> Optional[Variant]:
        with self.session_factory() as db:
            row = AssignmentRepository(db).get_assignment(experiment_id)
            return _variant_from_row(row) if row is not None else None

    def _read_confirmed_records(self) -> List[AssignmentModel]:
        with self.session_factory() as db:
            rows = AssignmentRepository(db).get_all_assignments()
            return [AssignmentModel.model_validate(row) for row in rows]

    def _write_confirmed(self, assignment: ConfirmableAssignment) -> bool:
        with self.session_factory() as db:
            repo = AssignmentRepository(db)
            existing = repo.get_assignment(assignment.experiment_id)
            if existing is not None:
                if existing.variant_id != assignment.variant.id:
                    logger.warning(
                        "Experiment already confirmed to a different variant, keeping it",
                        experiment_id=assignment.experiment_id,
                        confirmed_variant_id=existing.variant_id,
                        candidate_variant_id=assignment.variant.id,
                    )
                return False

            repo.create_assignment(assignment.experiment_id, assignment.variant)
            return True

    def _delete_confirmed(self) -> int:
        with self.session_factory() as db:
            return AssignmentRepository(db).delete_all_assignments()

    # --- Public API ---

    async def get_confirmed_assignments(self) -> Dict[str, Variant]:
        return await asyncio.to_thread(self._read_confirmed)

    async def get_confirmed_records(self) -> List[AssignmentModel]:
        return await asyncio.to_thread(self._read_confirmed_records)

    def get_unconfirmed_assignments(self) -> Dict[str, Variant]:
        return dict(self._unconfirmed)

    async def resolve(
        self, experiment_id: str
    ) -> Tuple[Optional[Variant], Optional[ConfirmableAssignment]]:
        """
        Looks up the variant for an experiment.

        The confirmed map always wins. A variant found only in the unconfirmed
        map comes back together with the ConfirmableAssignment that would make
        it durable. Returns (None, None) when neither map knows the experiment.
        """
        async with self._locks.hold([experiment_id]):
            confirmed = await asyncio.to_thread(self._read_confirmed_variant, experiment_id)
            if confirmed is not None:
                return confirmed, None

            unconfirmed = self._unconfirmed.get(experiment_id)
            if unconfirmed is None:
                return None, None

            return unconfirmed, ConfirmableAssignment(
                experiment_id=experiment_id, variant=unconfirmed
            )

    async def confirm(self, assignment: ConfirmableAssignment) -> bool:
        """
        Durably records an assignment. Returns False when the experiment was
        already confirmed, in which case the existing row is left untouched.
        """
        async with self._locks.hold([assignment.experiment_id]):
            written = await asyncio.to_thread(self._write_confirmed, assignment)
            self._unconfirmed.pop(assignment.experiment_id, None)

        if written:
            logger.info(
                "Assignment confirmed",
                experiment_id=assignment.experiment_id,
                variant_id=assignment.variant.id,
                variant_type=assignment.variant.type.value,
            )
        return written

    async def replace_unconfirmed(self, assignments: Dict[str, Variant]) -> None:
        """Swaps in a new unconfirmed map, dropping ids that are already confirmed."""
        async with self._locks.hold(set(self._unconfirmed) | set(assignments)):
            confirmed = await asyncio.to_thread(self._read_confirmed)
            self._unconfirmed = {
                experiment_id: variant
                for experiment_id, variant in assignments.items()
                if experiment_id not in confirmed
            }

        logger.debug(
            "Unconfirmed assignments replaced",
            received=len(assignments),
            kept=len(self._unconfirmed),
        )

    async def reset(self) -> None:
        """Clears confirmed and unconfirmed assignments (logout)."""
        async with self._locks.hold(set(self._unconfirmed) | self._locks.active_keys()):
            deleted = await asyncio.to_thread(self._delete_confirmed)
            self._unconfirmed = {}

        logger.info("Assignments reset", deleted=deleted)
