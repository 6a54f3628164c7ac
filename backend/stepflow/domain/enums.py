"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class NodeType(str, Enum):
    """Types of workflow nodes"""
    START = "START"
    ROLE = "ROLE"
    DEPARTMENT = "DEPARTMENT"  # Handoff to a department, behaves like ROLE
    APPROVAL = "APPROVAL"
    FORM = "FORM"
    CONDITIONAL = "CONDITIONAL"
    END = "END"


class InstanceStatus(str, Enum):
    """Global instance status"""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ApprovalDecision(str, Enum):
    """Decision carried by an approval vote"""
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    FEEDBACK = "FEEDBACK"  # Comment only, never counted


class Port(str, Enum):
    """Well-known output ports"""
    DEFAULT = "default"
    APPROVE = "approve"
    REJECT = "reject"


class HistoryEventType(str, Enum):
    """Kinds of history entries"""
    STARTED = "STARTED"
    ADVANCED = "ADVANCED"
    AUTO_ROUTED = "AUTO_ROUTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    STUCK = "STUCK"


class FormFieldType(str, Enum):
    """Form field types"""
    TEXT = "TEXT"
    TEXTAREA = "TEXTAREA"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    SELECT = "SELECT"
    MULTISELECT = "MULTISELECT"
    DATE = "DATE"


class ConditionOperator(str, Enum):
    """Operators for condition evaluation"""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_THAN_OR_EQUALS = "GREATER_THAN_OR_EQUALS"
    LESS_THAN_OR_EQUALS = "LESS_THAN_OR_EQUALS"
    BETWEEN = "BETWEEN"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    IN = "IN"
    NOT_IN = "NOT_IN"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"
    IS_TRUE = "IS_TRUE"
    IS_FALSE = "IS_FALSE"
    BEFORE = "BEFORE"
    AFTER = "AFTER"


class EntityKind(str, Enum):
    """Kinds of RBAC entities a node can reference"""
    ROLE = "ROLE"
    DEPARTMENT = "DEPARTMENT"


class NodeAction(str, Enum):
    """Command that completes a node requiring human action"""
    COMPLETE = "COMPLETE"
    SUBMIT_FORM = "SUBMIT_FORM"
    VOTE = "VOTE"
