"""
Instance Action Routes

Endpoints that complete active steps:
- Complete a role/department step
- Submit a form
- Vote on an approval
"""

from fastapi import APIRouter, Depends, HTTPException

from ...deps import get_current_actor_dep, get_correlation_id_dep
from ....domain.models import ActorContext
from ....domain.errors import DomainError
from ....engine.transition_engine import TransitionResult
from ....services.instance_service import InstanceService
from ....utils.logger import get_logger
from .schemas import CompleteStepRequest, SubmitFormRequest, VoteRequest

logger = get_logger(__name__)
router = APIRouter()


@router.post("/{instance_id}/nodes/{node_id}/complete", response_model=TransitionResult)
async def complete_step(
    instance_id: str,
    node_id: str,
    request: CompleteStepRequest,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Mark a role or department handoff as done"""
    try:
        service = InstanceService()
        return service.complete_step(instance_id, node_id, actor, notes=request.notes)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{instance_id}/nodes/{node_id}/submit-form", response_model=TransitionResult)
async def submit_form(
    instance_id: str,
    node_id: str,
    request: SubmitFormRequest,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Submit form values.

    Values are checked against the form's fields and become facts that
    later conditional nodes route on.
    """
    try:
        service = InstanceService()
        return service.submit_form(instance_id, node_id, actor, request.values)

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{instance_id}/nodes/{node_id}/votes", response_model=TransitionResult)
async def record_vote(
    instance_id: str,
    node_id: str,
    request: VoteRequest,
    actor: ActorContext = Depends(get_current_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Vote on an approval node.

    APPROVE and REJECT count once per user per round; FEEDBACK only
    attaches a comment.
    """
    try:
        service = InstanceService()
        return service.record_vote(
            instance_id, node_id, actor, request.decision, comment=request.comment
        )

    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
