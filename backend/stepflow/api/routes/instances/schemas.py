"""
Instance Schemas

Request and response models for instance API endpoints.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from ....domain.enums import ApprovalDecision


# =============================================================================
# Lifecycle Schemas
# =============================================================================

class StartInstanceRequest(BaseModel):
    """Request to start an instance"""
    template_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1, max_length=200)


class CancelInstanceRequest(BaseModel):
    """Request to cancel an instance"""
    reason: Optional[str] = Field(None, max_length=2000)


class InstanceListResponse(BaseModel):
    """Response for instance list"""
    items: List[Dict[str, Any]]
    page: int
    page_size: int


# =============================================================================
# Action Schemas
# =============================================================================

class CompleteStepRequest(BaseModel):
    """Request to complete a role or department step"""
    notes: Optional[str] = Field(None, max_length=5000)


class SubmitFormRequest(BaseModel):
    """Request to submit form values"""
    values: Dict[str, Any] = Field(default_factory=dict)


class VoteRequest(BaseModel):
    """Request to vote on an approval node"""
    decision: ApprovalDecision
    comment: Optional[str] = Field(None, max_length=2000)

    @field_validator("decision", mode="before")
    @classmethod
    def _normalize_decision(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v
