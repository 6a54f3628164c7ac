"""Assignment API Routes - Work queues"""
from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_current_actor_dep, get_correlation_id_dep
from ...domain.models import ActorContext
from ...domain.errors import DomainError
from ...services.instance_service import InstanceService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.get("/me")
async def get_my_assignments(
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Active steps the current user may act on"""
    try:
        service = InstanceService()
        assignments = service.get_assignments_for_user(actor.user_id)
        return {"items": [a.model_dump(mode="json") for a in assignments]}

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/users/{user_id}")
async def get_user_assignments(
    user_id: str,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Active steps a given user may act on"""
    try:
        service = InstanceService()
        assignments = service.get_assignments_for_user(user_id)
        return {"items": [a.model_dump(mode="json") for a in assignments]}

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
