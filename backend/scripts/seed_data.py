"""
Seed Data Script - Creates RBAC entities and a sample purchase template
Run: python -m scripts.seed_data
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stepflow.repositories.mongo_client import create_indexes
from stepflow.repositories.template_repo import TemplateRepository
from stepflow.services.rbac_service import MongoRbacResolver
from stepflow.domain.models import WorkflowTemplate, NodeTemplate, EdgeTemplate
from stepflow.domain.enums import EntityKind
from stepflow.utils.idgen import generate_template_id
from stepflow.utils.time import utc_now


def seed_entities(rbac: MongoRbacResolver) -> None:
    """Create the roles and departments used by the sample template"""
    rbac.upsert_entity("requesters", EntityKind.ROLE, members=["alice", "bob"], name="Requesters")
    rbac.upsert_entity("finance-approvers", EntityKind.ROLE, members=["carol", "dave"], name="Finance approvers")
    rbac.upsert_entity("procurement", EntityKind.DEPARTMENT, members=["erin"], name="Procurement")
    print("Seeded RBAC entities")


def create_sample_template(repo: TemplateRepository) -> None:
    """Create a sample purchase request workflow"""
    if repo.count_templates() > 0:
        print("Database already has templates. Skipping seed.")
        return

    now = utc_now()
    nodes = [
        NodeTemplate(node_id="start", node_type="START", label="Start"),
        NodeTemplate(
            node_id="request",
            node_type="FORM",
            label="Purchase request",
            fields=[
                {"key": "item", "label": "Item", "field_type": "TEXT", "required": True},
                {"key": "budget", "label": "Budget", "field_type": "NUMBER", "required": True, "min_value": 0},
            ],
        ),
        NodeTemplate(
            node_id="route",
            node_type="CONDITIONAL",
            label="Budget check",
            rules=[{
                "port": "high",
                "label": "Over 10k",
                "conditions": [{"fact": "budget", "operator": "GREATER_THAN", "value": 10000}],
            }],
            default_port="low",
        ),
        NodeTemplate(
            node_id="finance",
            node_type="APPROVAL",
            label="Finance approval",
            entity_ref="finance-approvers",
            approval={"required_approvals": 2, "allow_send_back": True},
        ),
        NodeTemplate(node_id="order", node_type="DEPARTMENT", label="Place order", entity_ref="procurement"),
        NodeTemplate(node_id="end", node_type="END", label="Done"),
    ]
    edges = [
        EdgeTemplate(source="start", target="request"),
        EdgeTemplate(source="request", target="route"),
        EdgeTemplate(source="route", source_port="high", target="finance"),
        EdgeTemplate(source="route", source_port="low", target="order"),
        EdgeTemplate(source="finance", source_port="approve", target="order"),
        EdgeTemplate(source="finance", source_port="reject", target="request"),
        EdgeTemplate(source="order", target="end"),
    ]

    template = WorkflowTemplate(
        template_id=generate_template_id(),
        name="Purchase Request",
        description="Form, budget routing, two-person finance approval, procurement",
        is_active=True,
        nodes=nodes,
        edges=edges,
        created_by="seed",
        created_at=now,
        updated_at=now,
    )
    repo.create_template(template)
    print(f"Created sample template: {template.template_id}")


if __name__ == "__main__":
    create_indexes()
    seed_entities(MongoRbacResolver())
    create_sample_template(TemplateRepository())
