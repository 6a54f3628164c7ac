"""Repositories - MongoDB data access"""
from .mongo_client import get_collection, get_database, create_indexes, health_check
from .template_repo import TemplateRepository
from .instance_repo import InstanceRepository
from .vote_repo import VoteRepository
from .history_repo import HistoryRepository

__all__ = [
    "get_collection",
    "get_database",
    "create_indexes",
    "health_check",
    "TemplateRepository",
    "InstanceRepository",
    "VoteRepository",
    "HistoryRepository",
]
