"""
Instance Lifecycle Routes

Endpoints for starting and cancelling instances.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ...deps import get_current_actor_dep, get_correlation_id_dep
from ....domain.models import ActorContext
from ....domain.errors import DomainError
from ....services.instance_service import InstanceService
from ....utils.logger import get_logger
from .schemas import StartInstanceRequest, CancelInstanceRequest

logger = get_logger(__name__)
router = APIRouter()


@router.post("/", status_code=status.HTTP_201_CREATED)
async def start_instance(
    request: StartInstanceRequest,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Start an instance of a template for a project.

    The template is validated and snapshotted; later template edits do not
    reach this instance.
    """
    try:
        service = InstanceService()
        instance = service.start_instance(request.template_id, request.project_id, actor)
        return instance.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{instance_id}/cancel")
async def cancel_instance(
    instance_id: str,
    request: CancelInstanceRequest,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Cancel an instance.

    Allowed for the user who started it and for superusers.
    """
    try:
        service = InstanceService()
        instance = service.cancel_instance(instance_id, actor, reason=request.reason)
        return instance.model_dump(mode="json")

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
