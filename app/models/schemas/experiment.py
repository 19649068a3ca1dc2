from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, Field, ConfigDict

from app.models.orm.experiment import ExperimentStatus, ExperimentType


# --- Variants ---


class VariantCreateModel(BaseModel):
    """Configuration for a single variant in an experiment."""

    key: str = Field(..., min_length=1, description="Unique within the experiment, e.g. 'control'.")
    name: str
    description: Optional[str] = None
    weight: int = Field(
        1,
        ge=1,
        description="Weight for traffic distribution, relative to the other variants.",
    )
    config: Dict[str, Any] = Field(
        default_factory=dict,
        description="Payload returned with each decision, e.g. {'buttonColor': 'blue'}.",
    )
    is_control: bool = False


class VariantUpdateModel(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    weight: Optional[int] = Field(None, ge=1)
    config: Optional[Dict[str, Any]] = None


class VariantResponseModel(BaseModel):
    variant_id: str
    key: str
    name: str
    description: Optional[str] = None
    weight: int
    config: Dict[str, Any] = Field(default_factory=dict)
    is_control: bool

    model_config = ConfigDict(from_attributes=True)


# --- Experiments ---


class ExperimentCreateModel(BaseModel):
    key: str = Field(..., min_length=1, description="Unique key, e.g. 'pricing-page-v2'.")
    name: str
    description: Optional[str] = None
    type: ExperimentType = ExperimentType.FEATURE
    traffic_allocation: int = Field(
        100,
        ge=0,
        le=100,
        description="Percentage of eligible traffic to include in the experiment.",
    )
    targeting_rules: Dict[str, Any] = Field(
        default_factory=dict,
        description="Attribute values a subject must match exactly, e.g. {'plan': 'pro'}.",
    )
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExperimentUpdateModel(BaseModel):
    """Partial update; only fields explicitly sent are applied."""

    name: Optional[str] = None
    description: Optional[str] = None
    traffic_allocation: Optional[int] = Field(None, ge=0, le=100)
    targeting_rules: Optional[Dict[str, Any]] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class ExperimentConcludeModel(BaseModel):
    winning_variant_id: Optional[str] = Field(
        None, description="ID of the winning variant (optional)."
    )


class ExperimentResponseModel(BaseModel):
    experiment_id: str
    key: str
    name: str
    description: Optional[str] = None
    type: ExperimentType
    status: ExperimentStatus
    traffic_allocation: int
    targeting_rules: Dict[str, Any] = Field(default_factory=dict)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    concluded_at: Optional[datetime] = None
    winning_variant_id: Optional[str] = None
    # ORM attribute is metadata_json; FastAPI re-validates the dumped "metadata" key
    metadata: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )
    variants: List[VariantResponseModel]
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
