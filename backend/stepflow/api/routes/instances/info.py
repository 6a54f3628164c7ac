"""
Instance Info Routes

Read-only endpoints: lists, detail, active steps, history and votes.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from ...deps import get_current_actor_dep, get_correlation_id_dep
from ....domain.models import ActorContext
from ....domain.enums import InstanceStatus
from ....domain.errors import DomainError
from ....services.instance_service import InstanceService
from ....utils.logger import get_logger
from .schemas import InstanceListResponse

logger = get_logger(__name__)
router = APIRouter()


@router.get("/", response_model=InstanceListResponse)
async def list_instances(
    project_id: Optional[str] = Query(None),
    status: Optional[InstanceStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """List instances, most recently started first"""
    try:
        service = InstanceService()
        skip = (page - 1) * page_size
        instances = service.list_instances(project_id=project_id, status=status, skip=skip, limit=page_size)
        return InstanceListResponse(
            items=[i.model_dump(mode="json") for i in instances],
            page=page,
            page_size=page_size
        )

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/stuck", response_model=InstanceListResponse)
async def list_stuck_instances(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Instances parked on a port with no outgoing edge"""
    try:
        service = InstanceService()
        skip = (page - 1) * page_size
        instances = service.list_stuck_instances(skip=skip, limit=page_size)
        return InstanceListResponse(
            items=[i.model_dump(mode="json") for i in instances],
            page=page,
            page_size=page_size
        )

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{instance_id}")
async def get_instance(
    instance_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Instance detail with active steps and their assignees"""
    try:
        service = InstanceService()
        return service.get_instance_detail(instance_id)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{instance_id}/status")
async def get_instance_status(
    instance_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Compact status of an instance"""
    try:
        service = InstanceService()
        return service.get_status(instance_id).model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{instance_id}/active-steps")
async def get_active_steps(
    instance_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Nodes currently awaiting action"""
    try:
        service = InstanceService()
        steps = service.get_active_steps(instance_id)
        return {"items": [s.model_dump(mode="json") for s in steps]}

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{instance_id}/history")
async def get_history(
    instance_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Transition history, oldest first"""
    try:
        service = InstanceService()
        entries = service.get_history(instance_id)
        return {"items": [e.model_dump(mode="json") for e in entries]}

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/{instance_id}/nodes/{node_id}/votes")
async def get_votes(
    instance_id: str,
    node_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Votes and feedback of the latest round of an approval node"""
    try:
        service = InstanceService()
        return service.get_votes(instance_id, node_id)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
