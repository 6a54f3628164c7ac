"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from .enums import (
    NodeType, InstanceStatus, ApprovalDecision, Port, HistoryEventType,
    FormFieldType, ConditionOperator
)


def _normalize_port(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _upper(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


# ============================================================================
# Actor
# ============================================================================

class ActorContext(BaseModel):
    """Current actor, as identified by the upstream gateway"""
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1, description="Opaque user identifier")
    display_name: Optional[str] = Field(None, description="User display name")


# ============================================================================
# Conditions
# ============================================================================

class Condition(BaseModel):
    """Single comparison against a named fact"""
    model_config = ConfigDict(extra="forbid")

    fact: str = Field(..., min_length=1, description="Fact to evaluate (dot path)")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Value to compare against")
    value2: Any = Field(None, description="Upper bound for BETWEEN")

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, v: Any) -> Any:
        return _upper(v)


class ConditionRule(BaseModel):
    """Rule of a conditional node - routes to `port` when its conditions hold"""
    model_config = ConfigDict(extra="forbid")

    port: str = Field(..., min_length=1, description="Output port selected by this rule")
    label: Optional[str] = None
    logic: str = Field("AND", description="AND or OR")
    conditions: List[Condition] = Field(default_factory=list)

    @field_validator("port", mode="before")
    @classmethod
    def _normalize_port(cls, v: Any) -> Any:
        return _normalize_port(v)

    @field_validator("logic", mode="before")
    @classmethod
    def _normalize_logic(cls, v: Any) -> Any:
        return _upper(v)


# ============================================================================
# Template Graph
# ============================================================================

class ApprovalSettings(BaseModel):
    """Settings for approval nodes"""
    model_config = ConfigDict(extra="forbid")

    required_approvals: int = Field(1, ge=1, description="Distinct approvals needed")
    allow_send_back: bool = Field(False, description="Any reject resolves to the reject port")
    allow_feedback: bool = Field(True, description="Allow comment-only feedback notes")


class FormField(BaseModel):
    """Field of a form node"""
    model_config = ConfigDict(extra="forbid")

    key: str = Field(..., min_length=1, description="Fact key the value is stored under")
    label: Optional[str] = None
    field_type: FormFieldType = FormFieldType.TEXT
    required: bool = False
    options: List[str] = Field(default_factory=list)
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    @field_validator("field_type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        return _upper(v)


class NodeTemplate(BaseModel):
    """Node definition in a template"""
    model_config = ConfigDict(extra="ignore")

    node_id: str = Field(..., min_length=1, description="Unique node ID")
    node_type: NodeType = Field(..., description="Node type tag")
    label: str = Field("", description="Display label")
    entity_ref: Optional[str] = Field(None, description="Role/department used for assignment")

    # Type specific settings
    approval: Optional[ApprovalSettings] = None
    fields: List[FormField] = Field(default_factory=list)
    rules: List[ConditionRule] = Field(default_factory=list)
    default_port: Optional[str] = Field(Port.DEFAULT.value, description="Else port of a conditional")

    # Designer layout, opaque to the engine
    position: Optional[Dict[str, Any]] = None

    @field_validator("node_type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator("default_port", mode="before")
    @classmethod
    def _normalize_default_port(cls, v: Any) -> Any:
        return _normalize_port(v)

    @property
    def approval_settings(self) -> ApprovalSettings:
        return self.approval or ApprovalSettings()


class EdgeTemplate(BaseModel):
    """Edge from a node's output port to a target node"""
    model_config = ConfigDict(extra="ignore")

    edge_id: Optional[str] = Field(None, description="Edge ID")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_port: str = Field(Port.DEFAULT.value, description="Output port on the source node")
    condition: Optional[Dict[str, Any]] = Field(None, description="Designer payload, not evaluated")

    @field_validator("source_port", mode="before")
    @classmethod
    def _normalize_port(cls, v: Any) -> Any:
        if v is None:
            return Port.DEFAULT.value
        return _normalize_port(v)


class WorkflowTemplate(BaseModel):
    """Editable workflow template"""
    model_config = ConfigDict(extra="forbid")

    template_id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    nodes: List[NodeTemplate] = Field(default_factory=list)
    edges: List[EdgeTemplate] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int = 1


class FrozenGraph(BaseModel):
    """Immutable copy of a template graph, owned by one instance"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    template_id: str
    template_version: int
    template_name: str
    nodes: List[NodeTemplate]
    edges: List[EdgeTemplate]
    captured_at: datetime

    def get_node(self, node_id: str) -> Optional[NodeTemplate]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def start_node(self) -> Optional[NodeTemplate]:
        for node in self.nodes:
            if node.node_type == NodeType.START:
                return node
        return None

    def outgoing(self, node_id: str, port: Optional[str] = None) -> List[EdgeTemplate]:
        """Outgoing edges of a node in declared order, optionally filtered by port"""
        return [
            e for e in self.edges
            if e.source == node_id and (port is None or e.source_port == port)
        ]


# ============================================================================
# Template Validation
# ============================================================================

class TemplateIssue(BaseModel):
    """Single validation finding"""
    type: str
    message: str
    path: Optional[str] = None


class ValidationReport(BaseModel):
    """Result of validating a template graph"""
    is_valid: bool
    errors: List[TemplateIssue] = Field(default_factory=list)
    warnings: List[TemplateIssue] = Field(default_factory=list)


# ============================================================================
# Runtime State
# ============================================================================

class StuckInfo(BaseModel):
    """Why an instance is parked with no way forward"""
    model_config = ConfigDict(extra="forbid")

    node_id: str
    port: Optional[str] = None
    reason: str
    since: datetime


class WorkflowInstance(BaseModel):
    """Running execution of a template snapshot for one project"""
    model_config = ConfigDict(extra="forbid")

    instance_id: str
    template_id: str
    project_id: str
    status: InstanceStatus = InstanceStatus.ACTIVE
    snapshot: FrozenGraph
    facts: Dict[str, Any] = Field(default_factory=dict)
    stuck: Optional[StuckInfo] = None
    started_by: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    history_count: int = 0
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED)


class ActiveStep(BaseModel):
    """Node currently awaiting action within an instance"""
    model_config = ConfigDict(extra="forbid")

    step_id: str
    instance_id: str
    node_id: str
    node_type: NodeType
    activated_at: datetime
    round_id: Optional[str] = Field(None, description="Approval round for approval nodes")


class Assignment(BaseModel):
    """User eligible to act on an active step (derived from RBAC)"""
    model_config = ConfigDict(extra="forbid")

    assignment_id: str
    instance_id: str
    node_id: str
    step_id: str = Field(..., description="Activation the assignment belongs to")
    user_id: str
    entity_ref: Optional[str] = None
    assigned_at: datetime


class ApprovalRound(BaseModel):
    """One activation of an approval node; votes are scoped to it"""
    model_config = ConfigDict(extra="forbid")

    round_id: str
    instance_id: str
    node_id: str
    required_approvals: int = 1
    allow_send_back: bool = False
    allow_feedback: bool = True
    opened_at: datetime
    resolved_port: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_port is not None


class ApprovalVote(BaseModel):
    """Vote of one user in one approval round"""
    model_config = ConfigDict(extra="forbid")

    vote_id: str
    round_id: str
    instance_id: str
    node_id: str
    user_id: str
    decision: ApprovalDecision
    comment: Optional[str] = None
    voted_at: datetime
    counted: bool = True


class ApprovalFeedback(BaseModel):
    """Comment-only note on an approval round"""
    model_config = ConfigDict(extra="forbid")

    feedback_id: str
    round_id: str
    instance_id: str
    node_id: str
    user_id: str
    comment: str
    created_at: datetime


class HistoryEntry(BaseModel):
    """Append-only record of one transition"""
    model_config = ConfigDict(extra="forbid")

    history_id: str
    instance_id: str
    sequence: int
    event_type: HistoryEventType
    node_id: Optional[str] = Field(None, description="Node entered by this transition")
    from_node_id: Optional[str] = None
    actor_id: Optional[str] = None
    decision: Optional[str] = None
    port: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class NodeOutcome(BaseModel):
    """Output of resolving a node - the port taken and facts produced"""
    port: str
    facts: Dict[str, Any] = Field(default_factory=dict)
    decision: Optional[str] = None


class InstanceStatusView(BaseModel):
    """Compact status of an instance for dashboards"""
    instance_id: str
    template_id: str
    project_id: str
    status: InstanceStatus
    active_node_ids: List[str] = Field(default_factory=list)
    stuck: Optional[StuckInfo] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
