"""
Pytest Configuration and Fixtures

Every test that touches storage gets a fresh in-memory mongomock database
patched into the global client.
"""

import os
import tempfile

os.environ.setdefault("LOGS_PATH", os.path.join(tempfile.gettempdir(), "stepflow-test-logs"))
os.environ.setdefault("MONGO_USE_TRANSACTIONS", "false")

from typing import Any, Callable, Dict, List

import mongomock
import pytest

from stepflow.config.settings import settings
from stepflow.domain.enums import EntityKind
from stepflow.domain.models import ActorContext, WorkflowTemplate, NodeTemplate, EdgeTemplate
from stepflow.engine.engine import WorkflowEngine
from stepflow.engine.locks import InstanceLockRegistry
from stepflow.repositories import mongo_client
from stepflow.services.rbac_service import MongoRbacResolver
from stepflow.services.template_service import TemplateService

SUPERUSER = "root-admin"


@pytest.fixture
def mongo_db(monkeypatch):
    """Fresh mongomock database with all indexes"""
    client = mongomock.MongoClient()
    monkeypatch.setattr(mongo_client, "_client", client)
    monkeypatch.setattr(mongo_client, "_database", client[settings.mongo_db])
    mongo_client.create_indexes()
    yield client[settings.mongo_db]


@pytest.fixture
def rbac(mongo_db) -> MongoRbacResolver:
    """Resolver with three entities and one superuser"""
    resolver = MongoRbacResolver(superuser_ids=[SUPERUSER])
    resolver.upsert_entity("requesters", EntityKind.ROLE, members=["alice", "bob"])
    resolver.upsert_entity(
        "finance", EntityKind.ROLE, members=["carol", "dave", "erin", "frank", "grace"]
    )
    resolver.upsert_entity("procurement", EntityKind.DEPARTMENT, members=["pat"])
    return resolver


@pytest.fixture
def engine(rbac) -> WorkflowEngine:
    return WorkflowEngine(rbac=rbac, locks=InstanceLockRegistry(timeout_seconds=5))


@pytest.fixture
def designer() -> ActorContext:
    return ActorContext(user_id="designer", display_name="Template Designer")


@pytest.fixture
def template_service(rbac) -> TemplateService:
    return TemplateService(rbac=rbac)


@pytest.fixture
def make_template(template_service, designer) -> Callable[..., WorkflowTemplate]:
    """Store a template built from plain node/edge dicts"""

    def _make(
        nodes: List[Dict[str, Any]],
        edges: List[Dict[str, Any]],
        name: str = "Test Template",
        is_active: bool = True
    ) -> WorkflowTemplate:
        return template_service.create_template(
            name=name,
            description=None,
            nodes=[NodeTemplate.model_validate(n) for n in nodes],
            edges=[EdgeTemplate.model_validate(e) for e in edges],
            actor=designer,
            is_active=is_active,
        )

    return _make
