from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field


class Subject(BaseModel):
    """The entity being bucketed. Any subset of the identifiers may be set."""

    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None

    def identifiers(self) -> List[Tuple[str, str]]:
        """Present identifiers as (kind, value), in bucketing precedence order."""
        pairs = [
            ("customer", self.customer_id),
            ("session", self.session_id),
            ("user", self.user_id),
        ]
        return [(kind, value) for kind, value in pairs if value]

    @property
    def has_identifier(self) -> bool:
        return bool(self.identifiers())

    @property
    def subject_id(self) -> Optional[str]:
        """The identifier hashed for traffic allocation and variant selection."""
        identifiers = self.identifiers()
        return identifiers[0][1] if identifiers else None

    @property
    def subject_key(self) -> Optional[str]:
        """Canonical identity stored on the assignment for the uniqueness constraint."""
        identifiers = self.identifiers()
        if not identifiers:
            return None
        kind, value = identifiers[0]
        return f"{kind}:{value}"


class AssignmentRequestModel(Subject):
    attributes: Optional[Dict[str, Any]] = Field(
        None,
        description="Subject attributes for targeting evaluation, e.g. {'plan': 'pro'}.",
    )


class OverrideRequestModel(Subject):
    variant_id: str = Field(..., description="ID of the variant to assign.")


class ConversionRequestModel(Subject):
    value: Optional[float] = Field(None, description="Conversion value, e.g. revenue in cents.")
    metadata: Optional[Dict[str, Any]] = None


class ConversionResponseModel(BaseModel):
    recorded: bool


class DecisionModel(BaseModel):
    """The variant a subject sees for one experiment."""

    experiment_key: str
    variant_key: str
    variant_config: Dict[str, Any] = Field(default_factory=dict)
    is_control: bool
    assignment_id: str
    is_new_assignment: bool
