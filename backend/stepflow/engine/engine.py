"""
Workflow Engine - The brain of the system

Single entry point for every instance command and query.

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INITIALIZATION
   - Wires RBAC resolver, repositories, transition engine, instance manager

2. LIFECYCLE COMMANDS
   - start_instance / cancel_instance

3. STEP COMMANDS
   - complete_role_step: role and department handoffs
   - submit_form: form nodes
   - record_approval_vote: approval nodes (APPROVE / REJECT / FEEDBACK)

4. QUERIES
   - active steps, history, assignments, status, stuck instances, votes

=============================================================================
DEPENDENCIES
=============================================================================

Collaborators:
    - RbacResolver: who may act on a role/department (external)
    - TransitionEngine: plan / advance / commit
    - InstanceManager: start, cancel, reads

Every mutating command holds the per-instance lock for its whole
read-validate-write cycle.
=============================================================================
"""
from typing import Any, Dict, List, Optional

from ..domain.models import (
    WorkflowInstance, ActiveStep, HistoryEntry, Assignment, InstanceStatusView,
    ApprovalVote, ApprovalFeedback, ApprovalRound
)
from ..domain.enums import NodeAction, ApprovalDecision, InstanceStatus
from ..domain.errors import ValidationError
from ..repositories.instance_repo import InstanceRepository
from ..repositories.template_repo import TemplateRepository
from ..repositories.vote_repo import VoteRepository
from ..services.rbac_service import RbacResolver, get_rbac_resolver
from .history_writer import HistoryWriter
from .instance_manager import InstanceManager
from .locks import InstanceLockRegistry
from .transition_engine import TransitionEngine, TransitionResult
from ..utils.logger import get_logger

logger = get_logger(__name__)


class WorkflowEngine:
    """
    Workflow execution engine

    Commands raise DomainError subclasses; routes translate them to HTTP.
    """

    def __init__(
        self,
        rbac: Optional[RbacResolver] = None,
        locks: Optional[InstanceLockRegistry] = None
    ):
        self.rbac = rbac or get_rbac_resolver()
        self.transitions = TransitionEngine(
            self.rbac,
            instance_repo=InstanceRepository(),
            vote_repo=VoteRepository(),
            history_writer=HistoryWriter(),
            locks=locks,
        )
        self.instances = InstanceManager(self.transitions, template_repo=TemplateRepository())

    # =========================================================================
    # Lifecycle Commands
    # =========================================================================

    def start_instance(
        self,
        template_id: str,
        project_id: str,
        started_by: Optional[str] = None
    ) -> WorkflowInstance:
        """Start a new instance of a template for a project"""
        return self.instances.start_instance(template_id, project_id, started_by=started_by)

    def cancel_instance(
        self,
        instance_id: str,
        actor_id: str,
        reason: Optional[str] = None
    ) -> WorkflowInstance:
        """Cancel an active instance"""
        return self.instances.cancel_instance(instance_id, actor_id, reason=reason)

    # =========================================================================
    # Step Commands
    # =========================================================================

    def complete_role_step(
        self,
        instance_id: str,
        node_id: str,
        actor_id: str,
        notes: Optional[str] = None
    ) -> TransitionResult:
        """Signal that a role/department handoff is done"""
        logger.info(
            f"Completing step {node_id} on {instance_id}",
            extra={"instance_id": instance_id, "node_id": node_id, "actor_id": actor_id}
        )
        payload: Dict[str, Any] = {}
        if notes:
            payload["notes"] = notes
        return self.transitions.complete_step(
            instance_id, node_id, actor_id, NodeAction.COMPLETE, payload=payload
        )

    def submit_form(
        self,
        instance_id: str,
        node_id: str,
        actor_id: str,
        values: Dict[str, Any]
    ) -> TransitionResult:
        """Submit form values; they become facts for later conditionals"""
        logger.info(
            f"Submitting form {node_id} on {instance_id}",
            extra={"instance_id": instance_id, "node_id": node_id, "actor_id": actor_id}
        )
        return self.transitions.complete_step(
            instance_id, node_id, actor_id, NodeAction.SUBMIT_FORM, payload={"values": values or {}}
        )

    def record_approval_vote(
        self,
        instance_id: str,
        node_id: str,
        actor_id: str,
        decision: ApprovalDecision,
        comment: Optional[str] = None
    ) -> TransitionResult:
        """Record APPROVE, REJECT or FEEDBACK on an approval node"""
        if not isinstance(decision, ApprovalDecision):
            try:
                decision = ApprovalDecision(str(decision).strip().upper())
            except ValueError:
                raise ValidationError(
                    f"Unknown approval decision: {decision}",
                    details={"allowed": [d.value for d in ApprovalDecision]}
                )

        logger.info(
            f"Recording {decision.value} on {node_id} of {instance_id}",
            extra={
                "instance_id": instance_id,
                "node_id": node_id,
                "actor_id": actor_id,
                "decision": decision.value,
            }
        )
        return self.transitions.complete_step(
            instance_id, node_id, actor_id, NodeAction.VOTE, decision=decision, comment=comment
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.instances.get_instance(instance_id)

    def get_active_steps(self, instance_id: str) -> List[ActiveStep]:
        return self.instances.get_active_steps(instance_id)

    def get_history(self, instance_id: str) -> List[HistoryEntry]:
        return self.instances.get_history(instance_id)

    def get_assignments_for_user(self, user_id: str) -> List[Assignment]:
        return self.instances.get_assignments_for_user(user_id)

    def get_assignments_for_node(self, instance_id: str, node_id: str) -> List[Assignment]:
        return self.instances.get_assignments_for_node(instance_id, node_id)

    def get_instance_status(self, instance_id: str) -> InstanceStatusView:
        return self.instances.get_instance_status(instance_id)

    def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowInstance]:
        return self.instances.list_instances(project_id=project_id, status=status, skip=skip, limit=limit)

    def list_stuck_instances(self, skip: int = 0, limit: int = 50) -> List[WorkflowInstance]:
        return self.instances.list_stuck_instances(skip=skip, limit=limit)

    def get_latest_round(self, instance_id: str, node_id: str) -> Optional[ApprovalRound]:
        return self.instances.get_latest_round(instance_id, node_id)

    def get_votes(self, instance_id: str, node_id: str) -> List[ApprovalVote]:
        return self.instances.get_votes(instance_id, node_id)

    def get_feedback(self, instance_id: str, node_id: str) -> List[ApprovalFeedback]:
        return self.instances.get_feedback(instance_id, node_id)
