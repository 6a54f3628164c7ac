"""Template Service - Template management business logic"""
from typing import Any, Dict, List, Optional

from ..domain.models import WorkflowTemplate, NodeTemplate, EdgeTemplate, ActorContext, ValidationReport
from ..domain.errors import InvalidTemplateError
from ..repositories.template_repo import TemplateRepository
from ..engine.snapshot import TemplateValidator
from .rbac_service import RbacResolver, get_rbac_resolver
from ..utils.idgen import generate_template_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TemplateService:
    """
    Service for template operations

    Templates are editable; running instances keep the snapshot taken when
    they started, so edits here never reach them.
    """

    def __init__(self, rbac: Optional[RbacResolver] = None):
        self.repo = TemplateRepository()
        self.rbac = rbac or get_rbac_resolver()

    def create_template(
        self,
        name: str,
        description: Optional[str],
        nodes: List[NodeTemplate],
        edges: List[EdgeTemplate],
        actor: ActorContext,
        is_active: bool = True,
        strict: bool = False
    ) -> WorkflowTemplate:
        """
        Create a template

        Structural problems are reported by validate_template and enforced at
        StartInstance; `strict` rejects an invalid graph up front.
        """
        if strict:
            self._ensure_valid(nodes, edges)

        now = utc_now()
        template = WorkflowTemplate(
            template_id=generate_template_id(),
            name=name,
            description=description,
            is_active=is_active,
            nodes=nodes,
            edges=edges,
            created_by=actor.user_id,
            created_at=now,
            updated_at=now,
            version=1
        )
        return self.repo.create_template(template)

    def get_template(self, template_id: str) -> WorkflowTemplate:
        """Get template by ID"""
        return self.repo.get_template_or_raise(template_id)

    def list_templates(
        self,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowTemplate]:
        """List templates"""
        return self.repo.list_templates(is_active=is_active, skip=skip, limit=limit)

    def count_templates(self, is_active: Optional[bool] = None) -> int:
        """Count templates"""
        return self.repo.count_templates(is_active=is_active)

    def update_template(
        self,
        template_id: str,
        actor: ActorContext,
        expected_version: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        nodes: Optional[List[NodeTemplate]] = None,
        edges: Optional[List[EdgeTemplate]] = None
    ) -> WorkflowTemplate:
        """Edit a live template (optimistic concurrency on version)"""
        updates: Dict[str, Any] = {}
        if name is not None:
            updates["name"] = name
        if description is not None:
            updates["description"] = description
        if nodes is not None:
            updates["nodes"] = [n.model_dump(mode="json") for n in nodes]
        if edges is not None:
            updates["edges"] = [e.model_dump(mode="json") for e in edges]

        template = self.repo.update_template(template_id, updates, expected_version=expected_version)
        logger.info(
            f"Template {template_id} edited by {actor.user_id}",
            extra={"template_id": template_id, "actor_id": actor.user_id}
        )
        return template

    def set_active(self, template_id: str, is_active: bool, actor: ActorContext) -> WorkflowTemplate:
        """Activate or deactivate a template for new instances"""
        template = self.repo.get_template_or_raise(template_id)
        if template.is_active == is_active:
            return template

        updated = self.repo.update_template(
            template_id,
            {"is_active": is_active},
            expected_version=template.version
        )
        logger.info(
            f"Template {template_id} {'activated' if is_active else 'deactivated'} by {actor.user_id}",
            extra={"template_id": template_id, "actor_id": actor.user_id}
        )
        return updated

    def validate_template(self, template_id: str) -> ValidationReport:
        """Validate a stored template"""
        template = self.repo.get_template_or_raise(template_id)
        return TemplateValidator(self.rbac).validate_template(template)

    def validate_definition(self, nodes: List[NodeTemplate], edges: List[EdgeTemplate]) -> ValidationReport:
        """Validate an unsaved graph"""
        return TemplateValidator(self.rbac).validate(nodes, edges)

    def _ensure_valid(self, nodes: List[NodeTemplate], edges: List[EdgeTemplate]) -> None:
        report = self.validate_definition(nodes, edges)
        if not report.is_valid:
            raise InvalidTemplateError(
                f"Template is invalid: {report.errors[0].message}",
                details={"errors": [e.model_dump() for e in report.errors]}
            )
