"""Workflow Engine - The brain of the system"""
from .engine import WorkflowEngine
from .transition_engine import TransitionEngine, TransitionResult
from .instance_manager import InstanceManager
from .permission_guard import PermissionGuard
from .transition_resolver import TransitionResolver
from .condition_evaluator import ConditionEvaluator
from .approval_aggregator import ApprovalAggregator
from .history_writer import HistoryWriter
from .snapshot import TemplateValidator, take_snapshot

__all__ = [
    "WorkflowEngine",
    "TransitionEngine",
    "TransitionResult",
    "InstanceManager",
    "PermissionGuard",
    "TransitionResolver",
    "ConditionEvaluator",
    "ApprovalAggregator",
    "HistoryWriter",
    "TemplateValidator",
    "take_snapshot",
]
