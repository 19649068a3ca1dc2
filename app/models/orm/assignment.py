from sqlalchemy import (
    Column,
    String,
    Float,
    Integer,
    ForeignKey,
    DateTime,
    Enum,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import Base, JSON_TYPE


class AssignmentSource(str, enum.Enum):
    AUTO = "auto"
    OVERRIDE = "override"


class AssignmentORM(Base):
    __tablename__ = "assignments"

    assignment_id = Column(String, primary_key=True)
    workspace_id = Column(String, nullable=False, index=True)
    experiment_id = Column(
        String, ForeignKey("experiments.experiment_id"), nullable=False, index=True
    )
    variant_id = Column(
        String, ForeignKey("variants.variant_id"), nullable=False, index=True
    )

    # --- Subject identifiers (any subset, at least one) ---
    customer_id = Column(String, nullable=True, index=True)
    session_id = Column(String, nullable=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    # "<kind>:<id>" of the identifier used for bucketing
    subject_key = Column(String, nullable=False)

    source = Column(
        Enum(
            AssignmentSource,
            values_callable=lambda e: [m.value for m in e],
            name="assignment_source",
        ),
        default=AssignmentSource.AUTO,
        nullable=False,
    )

    # --- Exposure tracking ---
    first_exposure_at = Column(DateTime, nullable=True)
    last_exposure_at = Column(DateTime, nullable=True)
    exposure_count = Column(Integer, default=0, nullable=False)

    # --- Conversion ---
    converted_at = Column(DateTime, nullable=True)
    conversion_value = Column(Float, nullable=True)
    conversion_metadata = Column(JSON_TYPE, nullable=True)

    metadata_json = Column("metadata", JSON_TYPE, default=dict, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        # One assignment per subject per experiment, enforced by the store
        UniqueConstraint(
            "experiment_id", "subject_key", name="uq_assignment_experiment_subject"
        ),
        # Subjects sharing any identifier are the same subject; NULLs never collide
        UniqueConstraint("experiment_id", "customer_id", name="uq_assignment_experiment_customer"),
        UniqueConstraint("experiment_id", "session_id", name="uq_assignment_experiment_session"),
        UniqueConstraint("experiment_id", "user_id", name="uq_assignment_experiment_user"),
        Index("ix_assignments_experiment_variant", "experiment_id", "variant_id"),
    )

    variant = relationship("VariantORM")

    experiment = relationship("ExperimentORM")
