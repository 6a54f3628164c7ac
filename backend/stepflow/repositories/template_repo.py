"""Template Repository - Data access for workflow templates"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection
from ..domain.models import WorkflowTemplate
from ..domain.errors import TemplateNotFoundError, ConcurrencyError, AlreadyExistsError
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TemplateRepository:
    """Repository for template operations"""

    def __init__(self):
        self._templates: Collection = get_collection("workflow_templates")

    def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Create a new template"""
        doc = template.model_dump(mode="json")
        doc["_id"] = template.template_id

        try:
            self._templates.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyExistsError(f"Template {template.template_id} already exists")

        logger.info(f"Created template: {template.template_id}", extra={"template_id": template.template_id})
        return template

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        """Get template by ID"""
        doc = self._templates.find_one({"template_id": template_id})
        if doc:
            doc.pop("_id", None)
            return WorkflowTemplate.model_validate(doc)
        return None

    def get_template_or_raise(self, template_id: str) -> WorkflowTemplate:
        """Get template by ID or raise error"""
        template = self.get_template(template_id)
        if not template:
            raise TemplateNotFoundError(
                f"Template {template_id} not found",
                details={"template_id": template_id}
            )
        return template

    def update_template(
        self,
        template_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> WorkflowTemplate:
        """
        Update template with optimistic concurrency

        Args:
            template_id: Template ID
            updates: Fields to update (already JSON-serialisable)
            expected_version: Expected version for optimistic lock
        """
        filter_query: Dict[str, Any] = {"template_id": template_id}
        update: Dict[str, Any] = {"$set": {**updates, "updated_at": utc_now().isoformat()}}
        if expected_version is not None:
            filter_query["version"] = expected_version
        update["$inc"] = {"version": 1}

        result = self._templates.find_one_and_update(
            filter_query,
            update,
            return_document=ReturnDocument.AFTER
        )

        if result is None:
            # Distinguish missing template from a stale version
            self.get_template_or_raise(template_id)
            raise ConcurrencyError(
                f"Template {template_id} was modified by another request",
                details={"template_id": template_id, "expected_version": expected_version}
            )

        result.pop("_id", None)
        logger.info(f"Updated template: {template_id}", extra={"template_id": template_id})
        return WorkflowTemplate.model_validate(result)

    def list_templates(
        self,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowTemplate]:
        """List templates, most recently updated first"""
        query: Dict[str, Any] = {}
        if is_active is not None:
            query["is_active"] = is_active

        cursor = self._templates.find(query).sort("updated_at", DESCENDING).skip(skip).limit(limit)

        templates = []
        for doc in cursor:
            doc.pop("_id", None)
            templates.append(WorkflowTemplate.model_validate(doc))
        return templates

    def count_templates(self, is_active: Optional[bool] = None) -> int:
        """Count templates"""
        query: Dict[str, Any] = {}
        if is_active is not None:
            query["is_active"] = is_active
        return self._templates.count_documents(query)
