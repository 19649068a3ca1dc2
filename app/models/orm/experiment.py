from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    ForeignKey,
    DateTime,
    Text,
    Enum,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import Base, JSON_TYPE


class ExperimentStatus(str, enum.Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    CONCLUDED = "concluded"
    ARCHIVED = "archived"


class ExperimentType(str, enum.Enum):
    FEATURE = "feature"
    PRICING = "pricing"
    UI = "ui"
    FUNNEL = "funnel"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# --- Experiment Model ---
class ExperimentORM(Base):
    __tablename__ = "experiments"

    # --- Core Identifiers ---
    experiment_id = Column(String, primary_key=True, index=True)
    workspace_id = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    type = Column(
        Enum(ExperimentType, values_callable=_enum_values, name="experiment_type"),
        default=ExperimentType.FEATURE,
        nullable=False,
    )

    # --- Lifecycle ---
    status = Column(
        Enum(ExperimentStatus, values_callable=_enum_values, name="experiment_status"),
        default=ExperimentStatus.DRAFT,
        nullable=False,
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # --- Timing ---
    start_at = Column(DateTime, nullable=True)
    end_at = Column(DateTime, nullable=True)
    concluded_at = Column(DateTime, nullable=True)

    # --- Traffic ---
    # Percentage (0-100) of eligible subjects admitted into the experiment
    traffic_allocation = Column(Integer, default=100, nullable=False)
    # Flat attribute -> value equality map
    targeting_rules = Column(JSON_TYPE, default=dict, nullable=False)

    # Set only once the experiment is concluded
    winning_variant_id = Column(String, nullable=True)

    # Python attribute "metadata" is reserved by the declarative base
    metadata_json = Column("metadata", JSON_TYPE, default=dict, nullable=False)

    # Variants are always listed in creation order; selection depends on it
    variants = relationship(
        "VariantORM",
        back_populates="experiment",
        order_by="VariantORM.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("workspace_id", "key", name="uq_experiment_workspace_key"),
        Index("ix_experiments_workspace_status", "workspace_id", "status"),
    )

    def get_variant(self, variant_id: str) -> "VariantORM | None":
        return next((v for v in self.variants if v.variant_id == variant_id), None)


# --- Variant Model ---
class VariantORM(Base):
    __tablename__ = "variants"

    variant_id = Column(String, primary_key=True)
    experiment_id = Column(
        String, ForeignKey("experiments.experiment_id"), nullable=False, index=True
    )
    key = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)

    # Relative to sibling weights, always >= 1
    weight = Column(Integer, default=1, nullable=False)
    is_control = Column(Boolean, default=False, nullable=False)

    # Free-form payload handed back to callers with each decision
    config = Column(JSON_TYPE, default=dict, nullable=False)

    position = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    experiment = relationship("ExperimentORM", back_populates="variants")

    __table_args__ = (
        UniqueConstraint("experiment_id", "key", name="uq_variant_experiment_key"),
    )
