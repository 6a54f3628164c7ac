"""Instance Service - Instance operations for the API layer"""
from typing import Any, Dict, List, Optional

from ..domain.models import (
    WorkflowInstance, ActiveStep, HistoryEntry, Assignment, ActorContext,
    InstanceStatusView, ApprovalVote, ApprovalFeedback
)
from ..domain.enums import ApprovalDecision, InstanceStatus
from ..engine.engine import WorkflowEngine
from ..engine.transition_engine import TransitionResult
from .rbac_service import RbacResolver
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InstanceService:
    """Service for instance operations"""

    def __init__(self, rbac: Optional[RbacResolver] = None):
        self.engine = WorkflowEngine(rbac=rbac)

    # =========================================================================
    # Commands
    # =========================================================================

    def start_instance(self, template_id: str, project_id: str, actor: ActorContext) -> WorkflowInstance:
        return self.engine.start_instance(template_id, project_id, started_by=actor.user_id)

    def complete_step(
        self,
        instance_id: str,
        node_id: str,
        actor: ActorContext,
        notes: Optional[str] = None
    ) -> TransitionResult:
        return self.engine.complete_role_step(instance_id, node_id, actor.user_id, notes=notes)

    def submit_form(
        self,
        instance_id: str,
        node_id: str,
        actor: ActorContext,
        values: Dict[str, Any]
    ) -> TransitionResult:
        return self.engine.submit_form(instance_id, node_id, actor.user_id, values)

    def record_vote(
        self,
        instance_id: str,
        node_id: str,
        actor: ActorContext,
        decision: ApprovalDecision,
        comment: Optional[str] = None
    ) -> TransitionResult:
        return self.engine.record_approval_vote(instance_id, node_id, actor.user_id, decision, comment=comment)

    def cancel_instance(
        self,
        instance_id: str,
        actor: ActorContext,
        reason: Optional[str] = None
    ) -> WorkflowInstance:
        return self.engine.cancel_instance(instance_id, actor.user_id, reason=reason)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance_detail(self, instance_id: str) -> Dict[str, Any]:
        """Instance with its active steps and who is assigned to each"""
        instance = self.engine.get_instance(instance_id)
        steps = self.engine.get_active_steps(instance_id)

        active_steps = []
        for step in steps:
            assignments = self.engine.get_assignments_for_node(instance_id, step.node_id)
            active_steps.append({
                **step.model_dump(mode="json"),
                "assigned_user_ids": [a.user_id for a in assignments],
            })

        return {
            "instance": instance.model_dump(mode="json"),
            "active_steps": active_steps,
        }

    def get_status(self, instance_id: str) -> InstanceStatusView:
        return self.engine.get_instance_status(instance_id)

    def get_active_steps(self, instance_id: str) -> List[ActiveStep]:
        return self.engine.get_active_steps(instance_id)

    def get_history(self, instance_id: str) -> List[HistoryEntry]:
        return self.engine.get_history(instance_id)

    def get_votes(self, instance_id: str, node_id: str) -> Dict[str, Any]:
        """Votes and feedback of the latest round of an approval node"""
        approval_round = self.engine.get_latest_round(instance_id, node_id)
        votes: List[ApprovalVote] = self.engine.get_votes(instance_id, node_id)
        feedback: List[ApprovalFeedback] = self.engine.get_feedback(instance_id, node_id)
        return {
            "round": approval_round.model_dump(mode="json") if approval_round else None,
            "votes": [v.model_dump(mode="json") for v in votes],
            "feedback": [f.model_dump(mode="json") for f in feedback],
        }

    def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowInstance]:
        return self.engine.list_instances(project_id=project_id, status=status, skip=skip, limit=limit)

    def list_stuck_instances(self, skip: int = 0, limit: int = 50) -> List[WorkflowInstance]:
        return self.engine.list_stuck_instances(skip=skip, limit=limit)

    def get_assignments_for_user(self, user_id: str) -> List[Assignment]:
        return self.engine.get_assignments_for_user(user_id)
