"""
Node Handlers - Per-type node behaviour

Every node type is a handler implementing the same contract:

    resolve(context) -> List[NodeOutcome]

The Transition Engine never branches on node type; it looks up the handler
and routes whatever outcomes come back. Adding a node type means writing a
handler and registering it.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..domain.models import (
    NodeTemplate, NodeOutcome, WorkflowInstance, ApprovalRound, FormField, TemplateIssue
)
from ..domain.enums import NodeType, NodeAction, Port, ApprovalDecision, FormFieldType
from ..domain.errors import ValidationError, EngineError
from ..repositories.mongo_client import UnitOfWork
from .condition_evaluator import ConditionEvaluator
from .approval_aggregator import ApprovalAggregator, VoteResult
from ..utils.time import coerce_datetime
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class NodeContext:
    """Everything a handler may look at while resolving one node"""
    instance: WorkflowInstance
    node: NodeTemplate
    facts: Dict[str, Any]
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    approval_round: Optional[ApprovalRound] = None
    decision: Optional[ApprovalDecision] = None
    comment: Optional[str] = None
    plan: Any = None  # TransitionPlan being built
    aggregator: Optional[ApprovalAggregator] = None
    unit: Optional[UnitOfWork] = None
    vote_result: Optional[VoteResult] = None


class NodeHandler:
    """Base handler - single default port, no human action"""

    node_type: NodeType
    action: Optional[NodeAction] = None
    pass_through: bool = False
    requires_entity: bool = False

    def required_ports(self, node: NodeTemplate) -> List[str]:
        return [Port.DEFAULT.value]

    def known_ports(self, node: NodeTemplate) -> List[str]:
        return self.required_ports(node)

    def validate(self, node: NodeTemplate) -> List[TemplateIssue]:
        """Type-specific settings checks"""
        return []

    def resolve(self, context: NodeContext) -> List[NodeOutcome]:
        return [NodeOutcome(port=Port.DEFAULT.value)]


class StartHandler(NodeHandler):
    """Entry marker - no side effects, leaves through the default port"""
    node_type = NodeType.START
    pass_through = True


class RoleHandler(NodeHandler):
    """Role handoff - advances as soon as the assignee signals completion"""
    node_type = NodeType.ROLE
    action = NodeAction.COMPLETE
    requires_entity = True

    def resolve(self, context: NodeContext) -> List[NodeOutcome]:
        notes = context.payload.get("notes")
        facts: Dict[str, Any] = {}
        if notes:
            facts["notes"] = {context.node.node_id: notes}
        return [NodeOutcome(port=Port.DEFAULT.value, facts=facts)]


class DepartmentHandler(RoleHandler):
    """Department handoff - same semantics as a role handoff"""
    node_type = NodeType.DEPARTMENT


class ApprovalHandler(NodeHandler):
    """
    Approval gate

    Delegates to the Approval Aggregator; yields an outcome only for the
    vote that resolves the round.
    """
    node_type = NodeType.APPROVAL
    action = NodeAction.VOTE
    requires_entity = True

    def required_ports(self, node: NodeTemplate) -> List[str]:
        ports = [Port.APPROVE.value]
        if node.approval_settings.allow_send_back:
            ports.append(Port.REJECT.value)
        return ports

    def known_ports(self, node: NodeTemplate) -> List[str]:
        return [Port.APPROVE.value, Port.REJECT.value]

    def resolve(self, context: NodeContext) -> List[NodeOutcome]:
        if context.approval_round is None or context.decision is None or context.aggregator is None:
            raise EngineError(
                f"Approval node {context.node.node_id} resolved without a round or decision"
            )

        result = context.aggregator.record_vote(
            context.approval_round,
            user_id=context.actor_id,
            decision=context.decision,
            comment=context.comment,
            unit=context.unit,
        )
        context.vote_result = result

        if result.resolved_port is None:
            return []

        node_id = context.node.node_id
        return [NodeOutcome(
            port=result.resolved_port,
            decision=result.resolved_port,
            facts={
                "approvals": {node_id: result.resolved_port},
                "last_decision": result.resolved_port,
            },
        )]


class FormHandler(NodeHandler):
    """
    Form collection

    Submitted values are validated against the field schema and merged into
    the running fact set, both top-level and under forms.<node_id>.
    """
    node_type = NodeType.FORM
    action = NodeAction.SUBMIT_FORM

    def validate(self, node: NodeTemplate) -> List[TemplateIssue]:
        issues = []
        seen = set()
        for form_field in node.fields:
            if form_field.key in seen:
                issues.append(TemplateIssue(
                    type="DUPLICATE_FIELD",
                    message=f"Form '{node.label or node.node_id}' defines field '{form_field.key}' twice",
                    path=f"nodes.{node.node_id}.fields.{form_field.key}",
                ))
            seen.add(form_field.key)
            if "." in form_field.key or form_field.key.startswith("$"):
                issues.append(TemplateIssue(
                    type="INVALID_FIELD_KEY",
                    message=f"Field key '{form_field.key}' may not contain '.' or start with '$'",
                    path=f"nodes.{node.node_id}.fields.{form_field.key}",
                ))
        return issues

    def resolve(self, context: NodeContext) -> List[NodeOutcome]:
        values = validate_form_values(context.node.fields, context.payload.get("values") or {})
        facts = dict(values)
        facts["forms"] = {context.node.node_id: dict(values)}
        return [NodeOutcome(port=Port.DEFAULT.value, facts=facts)]


class ConditionalHandler(NodeHandler):
    """Conditional branch - pass-through, routes on the accumulated facts"""
    node_type = NodeType.CONDITIONAL
    pass_through = True

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None):
        self.evaluator = evaluator or ConditionEvaluator()

    def required_ports(self, node: NodeTemplate) -> List[str]:
        ports: List[str] = []
        for rule in node.rules:
            if rule.port not in ports:
                ports.append(rule.port)
        return ports

    def known_ports(self, node: NodeTemplate) -> List[str]:
        ports = self.required_ports(node)
        if node.default_port and node.default_port not in ports:
            ports.append(node.default_port)
        return ports

    def resolve(self, context: NodeContext) -> List[NodeOutcome]:
        port = self.evaluator.evaluate(context.node.rules, context.facts, context.node.default_port)
        return [NodeOutcome(port=port)]


class EndHandler(NodeHandler):
    """End marker - completes the instance, produces no outcome"""
    node_type = NodeType.END
    pass_through = True

    def required_ports(self, node: NodeTemplate) -> List[str]:
        return []

    def resolve(self, context: NodeContext) -> List[NodeOutcome]:
        context.plan.complete(context.node.node_id)
        return []


# ============================================================================
# Registry
# ============================================================================

_HANDLERS: Dict[NodeType, NodeHandler] = {}


def register_handler(handler: NodeHandler) -> None:
    """Register (or replace) the handler for a node type"""
    _HANDLERS[handler.node_type] = handler


def get_handler(node_type: NodeType) -> NodeHandler:
    """Get the handler for a node type"""
    try:
        return _HANDLERS[node_type]
    except KeyError:
        raise EngineError(f"No handler registered for node type {node_type}")


for _handler in (
    StartHandler(), RoleHandler(), DepartmentHandler(), ApprovalHandler(),
    FormHandler(), ConditionalHandler(), EndHandler(),
):
    register_handler(_handler)


# ============================================================================
# Form Validation
# ============================================================================

def validate_form_values(fields: List[FormField], values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and coerce submitted form values

    Unknown keys pass through untouched; declared fields are type-checked.

    Raises:
        ValidationError: With every failing field in details.validation_errors
    """
    errors: Dict[str, str] = {}
    cleaned = dict(values)

    for form_field in fields:
        key = form_field.key
        raw = values.get(key)
        label = form_field.label or key

        if raw is None or (isinstance(raw, str) and raw.strip() == "") or raw == []:
            if form_field.required:
                errors[key] = f"{label} is required"
            continue

        if form_field.field_type == FormFieldType.NUMBER:
            number = _coerce_number(raw)
            if number is None:
                errors[key] = f"{label} must be a number"
                continue
            if form_field.min_value is not None and number < form_field.min_value:
                errors[key] = f"{label} must be at least {form_field.min_value:g}"
                continue
            if form_field.max_value is not None and number > form_field.max_value:
                errors[key] = f"{label} must be at most {form_field.max_value:g}"
                continue
            cleaned[key] = number

        elif form_field.field_type == FormFieldType.BOOLEAN:
            if not isinstance(raw, bool):
                errors[key] = f"{label} must be true or false"

        elif form_field.field_type == FormFieldType.SELECT:
            if form_field.options and raw not in form_field.options:
                errors[key] = f"{label} must be one of {', '.join(form_field.options)}"

        elif form_field.field_type == FormFieldType.MULTISELECT:
            if not isinstance(raw, list):
                errors[key] = f"{label} must be a list"
            elif form_field.options and any(v not in form_field.options for v in raw):
                errors[key] = f"{label} contains values outside {', '.join(form_field.options)}"

        elif form_field.field_type == FormFieldType.DATE:
            if coerce_datetime(raw) is None:
                errors[key] = f"{label} must be an ISO date"

    if errors:
        raise ValidationError(
            "Form validation failed",
            details={"validation_errors": errors}
        )

    return cleaned


def _coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if number.is_integer() else number
    return None
