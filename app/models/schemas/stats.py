from typing import List
from pydantic import BaseModel, Field


class VariantStatsModel(BaseModel):
    variant_id: str
    variant_key: str
    is_control: bool
    assignments: int
    exposures: int = Field(..., description="Assignments exposed at least once.")
    conversions: int
    conversion_rate: float = Field(..., description="conversions / exposures, 0 without exposures.")
    total_conversion_value: float


class ExperimentStatsModel(BaseModel):
    experiment_id: str
    total_assignments: int
    total_exposures: int
    total_conversions: int
    conversion_rate: float
    total_conversion_value: float
    variant_stats: List[VariantStatsModel]
