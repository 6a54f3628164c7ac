"""
Instance Manager - Instance lifecycle and read-side queries

Lifecycle:
- start: snapshot the template, enter the start node, auto-route onward
- cancel: deactivate everything, terminal CANCELLED
"""
from typing import List, Optional

from ..domain.models import (
    WorkflowInstance, ActiveStep, HistoryEntry, Assignment, InstanceStatusView,
    ApprovalVote, ApprovalFeedback, ApprovalRound
)
from ..domain.enums import InstanceStatus, HistoryEventType
from ..domain.errors import TemplateInactiveError, InvalidTemplateError
from ..repositories.mongo_client import start_unit_of_work
from ..repositories.template_repo import TemplateRepository
from .snapshot import take_snapshot
from .node_handlers import NodeContext, get_handler
from .transition_engine import TransitionEngine
from ..utils.idgen import generate_instance_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InstanceManager:
    """Create, cancel and inspect workflow instances"""

    def __init__(
        self,
        transitions: TransitionEngine,
        template_repo: Optional[TemplateRepository] = None
    ):
        self.transitions = transitions
        self.template_repo = template_repo or TemplateRepository()
        self.instance_repo = transitions.instance_repo
        self.vote_repo = transitions.vote_repo
        self.history_writer = transitions.history_writer

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start_instance(
        self,
        template_id: str,
        project_id: str,
        started_by: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Start a new instance of a template for a project

        Steps:
        1. Template must exist and be active
        2. Validate and freeze the graph
        3. STARTED history entry, then route out of the start node
        4. Persist instance, steps, rounds and history together

        Raises:
            TemplateNotFoundError, TemplateInactiveError, InvalidTemplateError
            NoMatchingEdgeError: After the instance was created and parked
        """
        template = self.template_repo.get_template_or_raise(template_id)
        if not template.is_active:
            raise TemplateInactiveError(
                f"Template {template_id} is not active",
                details={"template_id": template_id}
            )

        graph = take_snapshot(template, rbac=self.transitions.rbac)
        start = graph.start_node()
        if start is None:
            raise InvalidTemplateError(
                f"Template {template_id} has no start node",
                details={"template_id": template_id}
            )

        now = utc_now()
        instance = WorkflowInstance(
            instance_id=generate_instance_id(),
            template_id=template_id,
            project_id=project_id,
            status=InstanceStatus.ACTIVE,
            snapshot=graph,
            started_by=started_by,
            started_at=now,
            updated_at=now,
        )

        with self.transitions.locks.hold(instance.instance_id):
            plan = self.transitions.new_plan(instance, started_by, active_steps=[])
            plan.record(
                HistoryEventType.STARTED,
                node_id=start.node_id,
                details={"template_version": graph.template_version, "project_id": project_id},
            )
            context = NodeContext(
                instance=instance,
                node=start,
                facts=plan.facts,
                actor_id=started_by,
                plan=plan,
                aggregator=self.transitions.aggregator,
            )
            outcomes = get_handler(start.node_type).resolve(context)
            self.transitions.advance(plan, start, outcomes)
            with start_unit_of_work() as unit:
                created = self.transitions.commit(plan, unit, create=True)

        logger.info(
            f"Started instance {created.instance_id} of template {template_id} for project {project_id}",
            extra={
                "instance_id": created.instance_id,
                "template_id": template_id,
                "project_id": project_id,
                "actor_id": started_by,
            }
        )

        self.transitions.after_commit(plan, created)
        if plan.parked_error is not None:
            raise plan.parked_error
        return created

    def cancel_instance(
        self,
        instance_id: str,
        actor_id: str,
        reason: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Cancel an active instance

        Raises:
            InstanceNotFoundError, InstanceAlreadyTerminalError, PermissionDeniedError
        """
        with self.transitions.locks.hold(instance_id):
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            self.transitions.ensure_not_terminal(instance)
            self.transitions.guard.ensure_can_cancel(actor_id, instance)

            active_steps = self.instance_repo.get_active_steps(instance_id)
            plan = self.transitions.new_plan(instance, actor_id, active_steps)
            plan.cancel(reason)
            with start_unit_of_work() as unit:
                cancelled = self.transitions.commit(plan, unit)

        logger.info(
            f"Cancelled instance {instance_id}",
            extra={"instance_id": instance_id, "actor_id": actor_id}
        )
        self.transitions.after_commit(plan, cancelled)
        return cancelled

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.instance_repo.get_instance_or_raise(instance_id)

    def get_active_steps(self, instance_id: str) -> List[ActiveStep]:
        """Active steps of an instance (empty once terminal)"""
        self.instance_repo.get_instance_or_raise(instance_id)
        return self.instance_repo.get_active_steps(instance_id)

    def get_history(self, instance_id: str) -> List[HistoryEntry]:
        """History in append order"""
        self.instance_repo.get_instance_or_raise(instance_id)
        return self.history_writer.get_history(instance_id)

    def get_assignments_for_user(self, user_id: str) -> List[Assignment]:
        return self.instance_repo.get_assignments_for_user(user_id)

    def get_assignments_for_node(self, instance_id: str, node_id: str) -> List[Assignment]:
        return self.instance_repo.get_assignments_for_node(instance_id, node_id)

    def get_instance_status(self, instance_id: str) -> InstanceStatusView:
        instance = self.instance_repo.get_instance_or_raise(instance_id)
        steps = self.instance_repo.get_active_steps(instance_id)
        return InstanceStatusView(
            instance_id=instance.instance_id,
            template_id=instance.template_id,
            project_id=instance.project_id,
            status=instance.status,
            active_node_ids=[s.node_id for s in steps],
            stuck=instance.stuck,
            started_at=instance.started_at,
            completed_at=instance.completed_at,
            cancelled_at=instance.cancelled_at,
        )

    def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowInstance]:
        return self.instance_repo.list_instances(project_id=project_id, status=status, skip=skip, limit=limit)

    def list_stuck_instances(self, skip: int = 0, limit: int = 50) -> List[WorkflowInstance]:
        """Active instances parked on a port with no edge"""
        return self.instance_repo.list_instances(
            status=InstanceStatus.ACTIVE, stuck_only=True, skip=skip, limit=limit
        )

    def get_latest_round(self, instance_id: str, node_id: str) -> Optional[ApprovalRound]:
        self.instance_repo.get_instance_or_raise(instance_id)
        return self.vote_repo.get_latest_round(instance_id, node_id)

    def get_votes(self, instance_id: str, node_id: str) -> List[ApprovalVote]:
        """Votes of the latest round of an approval node, late votes included"""
        approval_round = self.get_latest_round(instance_id, node_id)
        if approval_round is None:
            return []
        return self.vote_repo.get_votes_for_round(approval_round.round_id)

    def get_feedback(self, instance_id: str, node_id: str) -> List[ApprovalFeedback]:
        approval_round = self.get_latest_round(instance_id, node_id)
        if approval_round is None:
            return []
        return self.vote_repo.get_feedback_for_round(approval_round.round_id)
