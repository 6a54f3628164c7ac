"""Template API Routes - Designer endpoints"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from ..deps import get_current_actor_dep, get_correlation_id_dep
from ...domain.models import ActorContext, NodeTemplate, EdgeTemplate, ValidationReport
from ...domain.errors import DomainError
from ...services.template_service import TemplateService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateTemplateRequest(BaseModel):
    """Request to create a template"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    is_active: bool = True
    nodes: List[NodeTemplate] = Field(default_factory=list)
    edges: List[EdgeTemplate] = Field(default_factory=list)
    strict: bool = Field(False, description="Reject structurally invalid graphs")


class UpdateTemplateRequest(BaseModel):
    """Request to edit a template"""
    expected_version: int = Field(..., ge=1)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    nodes: Optional[List[NodeTemplate]] = None
    edges: Optional[List[EdgeTemplate]] = None


class TemplateListResponse(BaseModel):
    """Response for template list"""
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int


# ============================================================================
# Routes
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    request: CreateTemplateRequest,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Create a template"""
    try:
        service = TemplateService()
        template = service.create_template(
            name=request.name,
            description=request.description,
            nodes=request.nodes,
            edges=request.edges,
            actor=actor,
            is_active=request.is_active,
            strict=request.strict,
        )
        return template.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("", response_model=TemplateListResponse)
async def list_templates(
    is_active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """List templates"""
    try:
        service = TemplateService()
        skip = (page - 1) * page_size
        templates = service.list_templates(is_active=is_active, skip=skip, limit=page_size)
        total = service.count_templates(is_active=is_active)

        return TemplateListResponse(
            items=[t.model_dump(mode="json") for t in templates],
            page=page,
            page_size=page_size,
            total=total
        )

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{template_id}")
async def get_template(
    template_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Get template details"""
    try:
        service = TemplateService()
        return service.get_template(template_id).model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.put("/{template_id}")
async def update_template(
    template_id: str,
    request: UpdateTemplateRequest,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Edit a template

    Running instances are unaffected; they execute their own snapshot.
    """
    try:
        service = TemplateService()
        template = service.update_template(
            template_id,
            actor=actor,
            expected_version=request.expected_version,
            name=request.name,
            description=request.description,
            nodes=request.nodes,
            edges=request.edges,
        )
        return template.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{template_id}/validate", response_model=ValidationReport)
async def validate_template(
    template_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Validate a template without starting it"""
    try:
        service = TemplateService()
        return service.validate_template(template_id)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{template_id}/activate")
async def activate_template(
    template_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Allow new instances of a template"""
    try:
        service = TemplateService()
        return service.set_active(template_id, True, actor).model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{template_id}/deactivate")
async def deactivate_template(
    template_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Stop new instances of a template; running ones continue"""
    try:
        service = TemplateService()
        return service.set_active(template_id, False, actor).model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
