# repositories/assignment_repo.py
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.orm.assignment import AssignmentORM, AssignmentSource
from app.models.schemas.assignment import Subject

logger = logging.getLogger(__name__)

_IDENTIFIER_COLUMNS = {
    "customer": AssignmentORM.customer_id,
    "session": AssignmentORM.session_id,
    "user": AssignmentORM.user_id,
}


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def _subject_clause(self, subject: Subject):
        """Matches rows sharing any identifier with the subject, or its subject key."""
        conditions = [
            _IDENTIFIER_COLUMNS[kind] == value for kind, value in subject.identifiers()
        ]
        conditions.append(AssignmentORM.subject_key == subject.subject_key)
        return or_(*conditions)

    def find_for_subject(
        self, experiment_id: str, subject: Subject
    ) -> Optional[AssignmentORM]:
        """
        Retrieves the assignment for a subject in an experiment.

        Manual overrides take precedence over automatic assignments when
        identifiers overlap several rows.
        """
        if not subject.has_identifier:
            return None

        stmt = (
            select(AssignmentORM)
            .where(
                AssignmentORM.experiment_id == experiment_id,
                self._subject_clause(subject),
            )
            .order_by(
                case((AssignmentORM.source == AssignmentSource.OVERRIDE, 0), else_=1),
                AssignmentORM.created_at,
            )
            .limit(1)
        )
        return self.db.scalars(stmt).first()

    def get_assignments_for_experiment(self, experiment_id: str) -> list[AssignmentORM]:
        stmt = select(AssignmentORM).where(AssignmentORM.experiment_id == experiment_id)

        return list(self.db.scalars(stmt).all())

    def _build(
        self,
        workspace_id: str,
        experiment_id: str,
        variant_id: str,
        subject: Subject,
        source: AssignmentSource,
        exposed_at: Optional[datetime],
    ) -> AssignmentORM:
        return AssignmentORM(
            assignment_id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            experiment_id=experiment_id,
            variant_id=variant_id,
            customer_id=subject.customer_id,
            session_id=subject.session_id,
            user_id=subject.user_id,
            subject_key=subject.subject_key,
            source=source,
            first_exposure_at=exposed_at,
            last_exposure_at=exposed_at,
            exposure_count=1 if exposed_at else 0,
            metadata_json={},
        )

    def create_if_absent(
        self, workspace_id: str, experiment_id: str, variant_id: str, subject: Subject
    ) -> tuple[AssignmentORM, bool]:
        """
        Inserts an automatic assignment unless one already exists for the
        subject, relying on the unique constraints over the subject key and
        each identifier rather than a prior read.

        Returns:
            (assignment, created). When a concurrent request for the subject
            won the race, even under a different identifier set, the row it
            committed is returned with created=False.
        """
        db_assignment = self._build(
            workspace_id,
            experiment_id,
            variant_id,
            subject,
            AssignmentSource.AUTO,
            exposed_at=datetime.utcnow(),
        )
        try:
            self.db.add(db_assignment)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_for_subject(experiment_id, subject)
            if existing is None:
                # Constraint failure other than the subject uniqueness checks
                raise
            logger.debug(
                "Lost assignment race for %s in experiment %s, using %s",
                subject.subject_key,
                experiment_id,
                existing.assignment_id,
            )
            return existing, False
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Exception occurred creating assignment")
            raise

        self.db.refresh(db_assignment)
        return db_assignment, True

    def replace_with_override(
        self, workspace_id: str, experiment_id: str, variant_id: str, subject: Subject
    ) -> AssignmentORM:
        """Deletes the subject's assignments and inserts an override, in one commit."""
        try:
            self.db.execute(
                delete(AssignmentORM).where(
                    AssignmentORM.experiment_id == experiment_id,
                    self._subject_clause(subject),
                )
            )
            db_assignment = self._build(
                workspace_id,
                experiment_id,
                variant_id,
                subject,
                AssignmentSource.OVERRIDE,
                exposed_at=None,
            )
            self.db.add(db_assignment)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Exception occurred overriding assignment")
            raise

        self.db.refresh(db_assignment)
        return db_assignment

    def record_exposure(self, assignment_id: str) -> None:
        """Increments the exposure counter in the store, not in Python."""
        now = datetime.utcnow()
        try:
            self.db.execute(
                update(AssignmentORM)
                .where(AssignmentORM.assignment_id == assignment_id)
                .values(
                    exposure_count=AssignmentORM.exposure_count + 1,
                    last_exposure_at=now,
                    first_exposure_at=case(
                        (AssignmentORM.first_exposure_at.is_(None), now),
                        else_=AssignmentORM.first_exposure_at,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Exception occurred recording exposure for %s", assignment_id)
            raise

    def mark_converted(
        self,
        assignment_id: str,
        value: Optional[float],
        metadata: Optional[Dict[str, Any]],
    ) -> bool:
        """
        Sets the conversion fields unless they are already set.

        Returns True only if this call recorded the conversion.
        """
        try:
            result = self.db.execute(
                update(AssignmentORM)
                .where(
                    AssignmentORM.assignment_id == assignment_id,
                    AssignmentORM.converted_at.is_(None),
                )
                .values(
                    converted_at=datetime.utcnow(),
                    conversion_value=value,
                    conversion_metadata=metadata,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Exception occurred recording conversion for %s", assignment_id)
            raise

        return result.rowcount == 1
