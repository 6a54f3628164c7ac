"""
Transition Engine - The state machine core

Given a completed active step, compute the next active step set and its
side effects, then commit them in one unit.

Sections:
- TransitionPlan: in-memory changes accumulated for one command
- TransitionEngine.complete_step: the step-completion command
- TransitionEngine.advance: port -> edge -> target routing with pass-through recursion
- TransitionEngine.commit: the write unit
- TransitionEngine.resolve_assignments: RBAC lookups after commit
"""
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..domain.models import (
    WorkflowInstance, FrozenGraph, NodeTemplate, NodeOutcome, ActiveStep, ApprovalRound,
    HistoryEntry, StuckInfo, Assignment
)
from ..domain.enums import (
    NodeType, NodeAction, InstanceStatus, HistoryEventType, ApprovalDecision
)
from ..domain.errors import (
    NodeNotActiveError, InstanceAlreadyTerminalError, InvalidActionError,
    NoMatchingEdgeError, EngineError
)
from ..repositories.instance_repo import InstanceRepository
from ..repositories.vote_repo import VoteRepository
from ..repositories.mongo_client import UnitOfWork, start_unit_of_work
from ..services.rbac_service import RbacResolver
from .approval_aggregator import ApprovalAggregator, VoteResult
from .history_writer import HistoryWriter
from .locks import InstanceLockRegistry, instance_locks
from .node_handlers import NodeContext, get_handler
from .permission_guard import PermissionGuard
from .transition_resolver import TransitionResolver
from ..utils.idgen import generate_step_id, generate_round_id, generate_assignment_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


def merge_facts(target: Dict[str, Any], new_facts: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge new facts into target; nested dicts merge, scalars overwrite"""
    for key, value in new_facts.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            merge_facts(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class TransitionResult(BaseModel):
    """Response of a step command"""
    instance_id: str
    node_id: str
    status: InstanceStatus
    advanced: bool = Field(False, description="True when the node produced an outcome")
    port: Optional[str] = None
    active_node_ids: List[str] = Field(default_factory=list)
    vote: Optional[VoteResult] = None
    stuck: Optional[StuckInfo] = None


# ============================================================================
# Transition Plan
# ============================================================================

@dataclass
class TransitionPlan:
    """
    Changes accumulated by one command before they are written

    Apart from an approval vote, which writes into the command's unit while
    the handler resolves, nothing touches storage until TransitionEngine.commit.
    A command that fails at any point rolls its unit back.
    """
    instance: WorkflowInstance
    actor_id: Optional[str]
    history_writer: HistoryWriter
    active: Dict[str, ActiveStep] = field(default_factory=dict)
    claimed_node_id: Optional[str] = None
    facts: Dict[str, Any] = field(default_factory=dict)
    removed: List[str] = field(default_factory=list)
    removed_steps: Dict[str, ActiveStep] = field(default_factory=dict)
    new_steps: Dict[str, ActiveStep] = field(default_factory=dict)
    new_rounds: Dict[str, ApprovalRound] = field(default_factory=dict)
    history: List[HistoryEntry] = field(default_factory=list)
    status: InstanceStatus = InstanceStatus.ACTIVE
    completed_at: Optional[Any] = None
    cancelled_at: Optional[Any] = None
    cancel_reason: Optional[str] = None
    stuck: Optional[StuckInfo] = None
    parked_error: Optional[NoMatchingEdgeError] = None

    def __post_init__(self):
        self.facts = copy.deepcopy(self.instance.facts)
        self.stuck = self.instance.stuck

    @property
    def graph(self) -> FrozenGraph:
        return self.instance.snapshot

    @property
    def is_terminal(self) -> bool:
        return self.status in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED)

    def record(self, event_type: HistoryEventType, **kwargs: Any) -> HistoryEntry:
        entry = self.history_writer.build_entry(
            instance_id=self.instance.instance_id,
            sequence=self.instance.history_count + len(self.history),
            event_type=event_type,
            actor_id=kwargs.pop("actor_id", self.actor_id),
            **kwargs
        )
        self.history.append(entry)
        return entry

    def deactivate(self, node_id: str) -> None:
        step = self.active.pop(node_id, None)
        if step is None:
            return
        if node_id in self.new_steps:
            del self.new_steps[node_id]
            self.new_rounds.pop(node_id, None)
        elif node_id not in self.removed:
            self.removed.append(node_id)
            self.removed_steps[node_id] = step

    def activate(self, node: NodeTemplate) -> bool:
        """Activate a node; False when it is already active (fan-in)"""
        if node.node_id in self.active:
            return False

        step = ActiveStep(
            step_id=generate_step_id(),
            instance_id=self.instance.instance_id,
            node_id=node.node_id,
            node_type=node.node_type,
            activated_at=utc_now(),
        )
        if node.node_type == NodeType.APPROVAL:
            approval = node.approval_settings
            approval_round = ApprovalRound(
                round_id=generate_round_id(),
                instance_id=self.instance.instance_id,
                node_id=node.node_id,
                required_approvals=approval.required_approvals,
                allow_send_back=approval.allow_send_back,
                allow_feedback=approval.allow_feedback,
                opened_at=step.activated_at,
            )
            step.round_id = approval_round.round_id
            self.new_rounds[node.node_id] = approval_round

        self.active[node.node_id] = step
        self.new_steps[node.node_id] = step
        return True

    def complete(self, end_node_id: str) -> None:
        for node_id in list(self.active):
            self.deactivate(node_id)
        self.status = InstanceStatus.COMPLETED
        self.completed_at = utc_now()
        self.stuck = None
        logger.info(
            f"Instance {self.instance.instance_id} completed at {end_node_id}",
            extra={"instance_id": self.instance.instance_id, "node_id": end_node_id}
        )

    def cancel(self, reason: Optional[str]) -> None:
        active_node_ids = list(self.active)
        for node_id in active_node_ids:
            self.deactivate(node_id)
        self.status = InstanceStatus.CANCELLED
        self.cancelled_at = utc_now()
        self.cancel_reason = reason
        self.record(
            HistoryEventType.CANCELLED,
            details={"active_node_ids": active_node_ids, "reason": reason},
        )

    def park(self, node_id: str, port: Optional[str], error: NoMatchingEdgeError) -> None:
        """Leave the instance at node_id and flag it for operator attention"""
        self.stuck = StuckInfo(node_id=node_id, port=port, reason=error.message, since=utc_now())
        self.record(
            HistoryEventType.STUCK,
            node_id=node_id,
            port=port,
            details={"reason": error.message},
        )
        self.parked_error = NoMatchingEdgeError(
            error.message,
            details={
                **error.details,
                "instance_id": self.instance.instance_id,
                "node_id": node_id,
                "port": port,
            }
        )
        logger.error(
            f"Instance {self.instance.instance_id} parked at {node_id}: {error.message}",
            extra={"instance_id": self.instance.instance_id, "node_id": node_id, "port": port}
        )

    def build_updates(self) -> Dict[str, Any]:
        updates: Dict[str, Any] = {
            "facts": self.facts,
            "status": self.status.value,
            "stuck": self.stuck.model_dump(mode="json") if self.stuck else None,
            "history_count": self.instance.history_count + len(self.history),
            "updated_at": utc_now().isoformat(),
        }
        if self.completed_at:
            updates["completed_at"] = self.completed_at.isoformat()
        if self.cancelled_at:
            updates["cancelled_at"] = self.cancelled_at.isoformat()
            updates["cancel_reason"] = self.cancel_reason
        return updates


# ============================================================================
# Transition Engine
# ============================================================================

class TransitionEngine:
    """
    Advance instances through their frozen graph

    Algorithm for a step-completion event (instance, node, actor, payload):
    1. Under the instance lock: instance ACTIVE, node active, command fits
       the node type, actor allowed
    2. Handler resolves the node into zero or more outcomes
    3. Each outcome's port -> first declared edge; none -> park
    4. Deactivate source, activate targets, append history
    5. Pass-through targets (conditional, end) resolve recursively
    6. Commit; then resolve assignments outside the lock
    """

    def __init__(
        self,
        rbac: RbacResolver,
        instance_repo: Optional[InstanceRepository] = None,
        vote_repo: Optional[VoteRepository] = None,
        history_writer: Optional[HistoryWriter] = None,
        locks: Optional[InstanceLockRegistry] = None
    ):
        self.rbac = rbac
        self.instance_repo = instance_repo or InstanceRepository()
        self.vote_repo = vote_repo or VoteRepository()
        self.history_writer = history_writer or HistoryWriter()
        self.aggregator = ApprovalAggregator(self.vote_repo)
        self.resolver = TransitionResolver()
        self.guard = PermissionGuard(rbac)
        self.locks = locks or instance_locks

    # =========================================================================
    # Step Completion
    # =========================================================================

    def complete_step(
        self,
        instance_id: str,
        node_id: str,
        actor_id: str,
        action: NodeAction,
        payload: Optional[Dict[str, Any]] = None,
        decision: Optional[ApprovalDecision] = None,
        comment: Optional[str] = None
    ) -> TransitionResult:
        """Apply a step-completion event to an instance"""
        with self.locks.hold(instance_id):
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            self.ensure_not_terminal(instance)

            node = instance.snapshot.get_node(node_id)
            if node is None:
                raise NodeNotActiveError(
                    f"Node {node_id} does not exist in instance {instance_id}",
                    details={"instance_id": instance_id, "node_id": node_id}
                )

            handler = get_handler(node.node_type)
            if handler.action != action:
                raise InvalidActionError(
                    f"Node {node_id} is a {node.node_type.value} node and cannot take {action.value}",
                    details={"node_id": node_id, "node_type": node.node_type.value, "action": action.value}
                )

            self.guard.ensure_can_act_on_node(actor_id, instance, node)

            active_steps = self.instance_repo.get_active_steps(instance_id)
            step = next((s for s in active_steps if s.node_id == node_id), None)
            if step is None:
                if action == NodeAction.VOTE:
                    late = self._record_late_vote(instance, node, actor_id, decision, comment)
                    if late is not None:
                        return late
                raise NodeNotActiveError(
                    f"Node {node_id} is not active for instance {instance_id}",
                    details={
                        "instance_id": instance_id,
                        "node_id": node_id,
                        "active_node_ids": [s.node_id for s in active_steps],
                    }
                )

            approval_round = None
            if action == NodeAction.VOTE:
                approval_round = self.vote_repo.get_round(step.round_id) if step.round_id else None
                if approval_round is None:
                    raise EngineError(
                        f"Approval node {node_id} is active without an open round",
                        details={"instance_id": instance_id, "node_id": node_id}
                    )

            plan = self.new_plan(instance, actor_id, active_steps, claimed_node_id=node_id)
            with start_unit_of_work() as unit:
                context = NodeContext(
                    instance=instance,
                    node=node,
                    facts=plan.facts,
                    actor_id=actor_id,
                    payload=payload or {},
                    approval_round=approval_round,
                    decision=decision,
                    comment=comment,
                    plan=plan,
                    aggregator=self.aggregator,
                    unit=unit,
                )
                outcomes = handler.resolve(context)

                if not outcomes:
                    # Vote recorded, threshold not reached yet
                    return TransitionResult(
                        instance_id=instance_id,
                        node_id=node_id,
                        status=instance.status,
                        active_node_ids=[s.node_id for s in active_steps],
                        vote=context.vote_result,
                        stuck=instance.stuck,
                    )

                self.advance(plan, node, outcomes)
                updated = self.commit(plan, unit)

        self.after_commit(plan, updated)

        if plan.parked_error is not None:
            raise plan.parked_error

        return TransitionResult(
            instance_id=instance_id,
            node_id=node_id,
            status=updated.status,
            advanced=True,
            port=outcomes[0].port,
            active_node_ids=list(plan.active),
            vote=context.vote_result,
            stuck=updated.stuck,
        )

    def _record_late_vote(
        self,
        instance: WorkflowInstance,
        node: NodeTemplate,
        actor_id: str,
        decision: Optional[ApprovalDecision],
        comment: Optional[str]
    ) -> Optional[TransitionResult]:
        """Record an audit-only vote on a round that already resolved"""
        latest = self.vote_repo.get_latest_round(instance.instance_id, node.node_id)
        if latest is None or not latest.is_resolved or decision is None:
            return None

        with start_unit_of_work() as unit:
            result = self.aggregator.record_vote(latest, actor_id, decision, comment, unit=unit)
        return TransitionResult(
            instance_id=instance.instance_id,
            node_id=node.node_id,
            status=instance.status,
            port=latest.resolved_port,
            active_node_ids=[s.node_id for s in self.instance_repo.get_active_steps(instance.instance_id)],
            vote=result,
            stuck=instance.stuck,
        )

    @staticmethod
    def ensure_not_terminal(instance: WorkflowInstance) -> None:
        if instance.is_terminal:
            raise InstanceAlreadyTerminalError(
                f"Instance {instance.instance_id} is {instance.status.value}",
                details={"instance_id": instance.instance_id, "status": instance.status.value}
            )

    # =========================================================================
    # Planning
    # =========================================================================

    def new_plan(
        self,
        instance: WorkflowInstance,
        actor_id: Optional[str],
        active_steps: List[ActiveStep],
        claimed_node_id: Optional[str] = None
    ) -> TransitionPlan:
        """Start a plan from the instance's current state"""
        return TransitionPlan(
            instance=instance,
            actor_id=actor_id,
            history_writer=self.history_writer,
            active={s.node_id: s for s in active_steps},
            claimed_node_id=claimed_node_id,
            status=instance.status,
        )

    def advance(
        self,
        plan: TransitionPlan,
        source: NodeTemplate,
        outcomes: List[NodeOutcome]
    ) -> None:
        """
        Route outcomes of `source` to their targets, recursing through pass-through nodes

        Recursion depth is bounded by template validation, which rejects
        forward cycles and pass-through chains longer than max_auto_route_hops.
        """
        if not outcomes:
            return

        try:
            routes = [
                (outcome, self.resolver.resolve_edge(plan.graph, source.node_id, outcome.port))
                for outcome in outcomes
            ]
        except NoMatchingEdgeError as e:
            plan.park(source.node_id, e.details.get("port"), e)
            return

        source_handler = get_handler(source.node_type)
        targets: List[NodeTemplate] = []

        for outcome, edge in routes:
            merge_facts(plan.facts, outcome.facts)
            plan.deactivate(source.node_id)

            target = plan.graph.get_node(edge.target)
            if target is None:
                raise EngineError(
                    f"Edge from {source.node_id} points at unknown node {edge.target}",
                    details={"instance_id": plan.instance.instance_id}
                )

            if target.node_type == NodeType.END:
                event_type = HistoryEventType.COMPLETED
            elif source_handler.pass_through and source.node_type != NodeType.START:
                event_type = HistoryEventType.AUTO_ROUTED
            else:
                event_type = HistoryEventType.ADVANCED

            plan.record(
                event_type,
                node_id=target.node_id,
                from_node_id=source.node_id,
                decision=outcome.decision,
                port=outcome.port,
            )
            if plan.activate(target):
                targets.append(target)

        if plan.stuck is not None and plan.stuck.node_id == source.node_id:
            plan.stuck = None

        for target in targets:
            handler = get_handler(target.node_type)
            if not handler.pass_through or target.node_id not in plan.active:
                continue

            context = NodeContext(
                instance=plan.instance,
                node=target,
                facts=plan.facts,
                actor_id=plan.actor_id,
                plan=plan,
                aggregator=self.aggregator,
            )
            try:
                next_outcomes = handler.resolve(context)
            except NoMatchingEdgeError as e:
                plan.park(target.node_id, None, e)
                continue
            self.advance(plan, target, next_outcomes)

    # =========================================================================
    # Commit
    # =========================================================================

    def commit(self, plan: TransitionPlan, unit: UnitOfWork, create: bool = False) -> WorkflowInstance:
        """
        Write a plan inside `unit`

        Order: claim the completed step (loses races with NodeNotActiveError),
        swap active steps, open rounds, append history, drop assignments of
        removed steps, then the versioned instance write (loses races with
        ConcurrencyError). The instance write goes last, so a failure at any
        earlier point rolls the unit back and leaves the previous state.
        """
        instance_id = plan.instance.instance_id
        session = unit.session

        if not create:
            if plan.claimed_node_id in plan.removed:
                self.instance_repo.claim_active_step(instance_id, plan.claimed_node_id, session=session)
                unit.on_rollback(
                    self.instance_repo.add_active_steps, [plan.removed_steps[plan.claimed_node_id]]
                )
            others = [n for n in plan.removed if n != plan.claimed_node_id]
            unit.on_rollback(self.instance_repo.add_active_steps, [plan.removed_steps[n] for n in others])
            self.instance_repo.remove_active_steps(instance_id, others, session=session)

        new_rounds = list(plan.new_rounds.values())
        unit.on_rollback(self.vote_repo.delete_rounds, [r.round_id for r in new_rounds])
        self.vote_repo.create_rounds(new_rounds, session=session)

        new_steps = list(plan.new_steps.values())
        unit.on_rollback(self.instance_repo.delete_steps, [s.step_id for s in new_steps])
        self.instance_repo.add_active_steps(new_steps, session=session)

        unit.on_rollback(self.history_writer.discard, plan.history)
        self.history_writer.write(plan.history, session=session)

        if create:
            instance = plan.instance.model_copy(update={
                "facts": plan.facts,
                "status": plan.status,
                "stuck": plan.stuck,
                "history_count": plan.instance.history_count + len(plan.history),
                "completed_at": plan.completed_at,
            })
            self.instance_repo.create_instance(instance, session=session)
        else:
            dropped = self.instance_repo.take_assignments(
                instance_id,
                None if plan.is_terminal else plan.removed,
                session=session
            )
            unit.on_rollback(self.instance_repo.insert_assignments, dropped)
            instance = self.instance_repo.update_instance(
                instance_id,
                plan.build_updates(),
                expected_version=plan.instance.version,
                session=session
            )

        logger.info(
            f"Committed transition for {instance_id}: active={list(plan.active)}",
            extra={"instance_id": instance_id, "status": instance.status.value, "actor_id": plan.actor_id}
        )
        return instance

    def after_commit(self, plan: TransitionPlan, instance: WorkflowInstance) -> None:
        """Work done outside the lock once a plan is durable"""
        if plan.is_terminal:
            return
        self.resolve_assignments(instance.instance_id, plan.graph, list(plan.new_steps.values()))

    # =========================================================================
    # Assignments
    # =========================================================================

    def resolve_assignments(self, instance_id: str, graph: FrozenGraph, steps: List[ActiveStep]) -> None:
        """
        Ask RBAC who may act on newly activated steps

        Non-blocking: the transition is already committed, so a failing
        lookup is logged and leaves the step unassigned. Assignments carry
        their step id; reads skip those whose step is no longer active.
        """
        for step in steps:
            node = graph.get_node(step.node_id)
            if node is None or not node.entity_ref:
                continue
            try:
                user_ids = self.rbac.eligible_users(node.entity_ref)
            except Exception as e:
                logger.error(
                    f"Assignment resolution failed for node {node.node_id}: {e}",
                    extra={"instance_id": instance_id, "node_id": node.node_id},
                    exc_info=True
                )
                continue

            current = self.instance_repo.get_active_step(instance_id, node.node_id)
            if current is None or current.step_id != step.step_id:
                # Step already moved on while RBAC was consulted
                continue

            now = utc_now()
            assignments = [
                Assignment(
                    assignment_id=generate_assignment_id(),
                    instance_id=instance_id,
                    node_id=node.node_id,
                    step_id=step.step_id,
                    user_id=user_id,
                    entity_ref=node.entity_ref,
                    assigned_at=now,
                )
                for user_id in dict.fromkeys(user_ids)
            ]
            self.instance_repo.replace_assignments(step.step_id, assignments)
            logger.info(
                f"Assigned node {node.node_id} to {len(assignments)} user(s)",
                extra={"instance_id": instance_id, "node_id": node.node_id}
            )
