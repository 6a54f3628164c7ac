"""Instance Repository - Data access for instances, active steps and assignments"""
from typing import Any, Dict, List, Optional
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection
from ..domain.models import WorkflowInstance, ActiveStep, Assignment
from ..domain.enums import InstanceStatus
from ..domain.errors import (
    InstanceNotFoundError, ConcurrencyError, AlreadyExistsError, NodeNotActiveError
)
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InstanceRepository:
    """Repository for instance state"""

    def __init__(self):
        self._instances: Collection = get_collection("workflow_instances")
        self._active_steps: Collection = get_collection("active_steps")
        self._assignments: Collection = get_collection("assignments")

    # =========================================================================
    # Instances
    # =========================================================================

    def create_instance(
        self,
        instance: WorkflowInstance,
        session: Optional[ClientSession] = None
    ) -> WorkflowInstance:
        """Create a new instance"""
        doc = instance.model_dump(mode="json")
        doc["_id"] = instance.instance_id

        try:
            self._instances.insert_one(doc, session=session)
        except DuplicateKeyError:
            raise AlreadyExistsError(f"Instance {instance.instance_id} already exists")

        logger.info(
            f"Created instance: {instance.instance_id}",
            extra={"instance_id": instance.instance_id, "template_id": instance.template_id}
        )
        return instance

    def delete_instance(self, instance_id: str) -> bool:
        """Remove an instance whose creating command did not commit"""
        return self._instances.delete_one({"instance_id": instance_id}).deleted_count == 1

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Get instance by ID"""
        doc = self._instances.find_one({"instance_id": instance_id})
        if doc:
            doc.pop("_id", None)
            return WorkflowInstance.model_validate(doc)
        return None

    def get_instance_or_raise(self, instance_id: str) -> WorkflowInstance:
        """Get instance by ID or raise error"""
        instance = self.get_instance(instance_id)
        if not instance:
            raise InstanceNotFoundError(
                f"Instance {instance_id} not found",
                details={"instance_id": instance_id}
            )
        return instance

    def update_instance(
        self,
        instance_id: str,
        updates: Dict[str, Any],
        expected_version: int,
        session: Optional[ClientSession] = None
    ) -> WorkflowInstance:
        """
        Update instance with optimistic concurrency

        The version is bumped on every write; a stale expected_version means
        another writer got there first.
        """
        result = self._instances.find_one_and_update(
            {"instance_id": instance_id, "version": expected_version},
            {"$set": {**updates, "version": expected_version + 1}},
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if result is None:
            raise ConcurrencyError(
                f"Instance {instance_id} was modified concurrently",
                details={"instance_id": instance_id, "expected_version": expected_version}
            )

        result.pop("_id", None)
        return WorkflowInstance.model_validate(result)

    def list_instances(
        self,
        project_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
        stuck_only: bool = False,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowInstance]:
        """List instances, most recently started first"""
        query: Dict[str, Any] = {}
        if project_id:
            query["project_id"] = project_id
        if status:
            query["status"] = status.value
        if stuck_only:
            query["stuck"] = {"$ne": None}

        cursor = self._instances.find(query).sort("started_at", DESCENDING).skip(skip).limit(limit)

        instances = []
        for doc in cursor:
            doc.pop("_id", None)
            instances.append(WorkflowInstance.model_validate(doc))
        return instances

    # =========================================================================
    # Active Steps
    # =========================================================================

    def get_active_steps(self, instance_id: str) -> List[ActiveStep]:
        """Get active steps of an instance in activation order"""
        cursor = self._active_steps.find({"instance_id": instance_id}).sort("activated_at", ASCENDING)

        steps = []
        for doc in cursor:
            doc.pop("_id", None)
            steps.append(ActiveStep.model_validate(doc))
        return steps

    def get_active_step(self, instance_id: str, node_id: str) -> Optional[ActiveStep]:
        """Get the active step for a node, if the node is active"""
        doc = self._active_steps.find_one({"instance_id": instance_id, "node_id": node_id})
        if doc:
            doc.pop("_id", None)
            return ActiveStep.model_validate(doc)
        return None

    def claim_active_step(
        self,
        instance_id: str,
        node_id: str,
        session: Optional[ClientSession] = None
    ) -> None:
        """
        Remove the step that is being completed

        Only one caller can delete the document, so a lost race surfaces as
        NodeNotActiveError.
        """
        result = self._active_steps.delete_one(
            {"instance_id": instance_id, "node_id": node_id},
            session=session
        )
        if result.deleted_count != 1:
            raise NodeNotActiveError(
                f"Node {node_id} is not active for instance {instance_id}",
                details={"instance_id": instance_id, "node_id": node_id}
            )

    def remove_active_steps(
        self,
        instance_id: str,
        node_ids: List[str],
        session: Optional[ClientSession] = None
    ) -> int:
        """Remove active steps for the given nodes"""
        if not node_ids:
            return 0
        result = self._active_steps.delete_many(
            {"instance_id": instance_id, "node_id": {"$in": node_ids}},
            session=session
        )
        return result.deleted_count

    def add_active_steps(
        self,
        steps: List[ActiveStep],
        session: Optional[ClientSession] = None
    ) -> None:
        """Activate steps; the unique (instance, node) index prevents doubles"""
        for step in steps:
            doc = step.model_dump(mode="json")
            doc["_id"] = step.step_id
            try:
                self._active_steps.insert_one(doc, session=session)
            except DuplicateKeyError:
                logger.info(
                    f"Node {step.node_id} already active, skipping activation",
                    extra={"instance_id": step.instance_id, "node_id": step.node_id}
                )

    def delete_steps(self, step_ids: List[str]) -> int:
        """Remove steps by id; used to undo an activation that did not commit"""
        if not step_ids:
            return 0
        return self._active_steps.delete_many({"step_id": {"$in": step_ids}}).deleted_count

    # =========================================================================
    # Assignments
    # =========================================================================

    def replace_assignments(self, step_id: str, assignments: List[Assignment]) -> None:
        """Replace the assignments of one active step"""
        self._assignments.delete_many({"step_id": step_id})
        self.insert_assignments(assignments)

    def insert_assignments(self, assignments: List[Assignment]) -> None:
        if not assignments:
            return
        docs = []
        for assignment in assignments:
            doc = assignment.model_dump(mode="json")
            doc["_id"] = assignment.assignment_id
            docs.append(doc)
        self._assignments.insert_many(docs)

    def take_assignments(
        self,
        instance_id: str,
        node_ids: Optional[List[str]] = None,
        session: Optional[ClientSession] = None
    ) -> List[Assignment]:
        """
        Delete assignments of an instance (all nodes, or the given ones)

        Returns the deleted assignments so a failed command can put them back.
        """
        query: Dict[str, Any] = {"instance_id": instance_id}
        if node_ids is not None:
            if not node_ids:
                return []
            query["node_id"] = {"$in": node_ids}

        removed = self._load_assignments(self._assignments.find(query, session=session))
        if removed:
            self._assignments.delete_many(
                {"assignment_id": {"$in": [a.assignment_id for a in removed]}},
                session=session
            )
        return removed

    def get_assignments_for_user(self, user_id: str) -> List[Assignment]:
        """
        Get the assignments of a user on steps that are still active

        Assignments are written after the transition commits, so a step can
        move on before its assignments land; those leftovers are skipped.
        """
        cursor = self._assignments.find({"user_id": user_id}).sort("assigned_at", ASCENDING)
        return self._only_active(self._load_assignments(cursor))

    def get_assignments_for_node(self, instance_id: str, node_id: str) -> List[Assignment]:
        """Get assignments of one active node"""
        cursor = self._assignments.find({"instance_id": instance_id, "node_id": node_id})
        return self._only_active(self._load_assignments(cursor))

    def _only_active(self, assignments: List[Assignment]) -> List[Assignment]:
        if not assignments:
            return []
        step_ids = list({a.step_id for a in assignments})
        active = {
            doc["step_id"]
            for doc in self._active_steps.find({"step_id": {"$in": step_ids}}, {"step_id": 1})
        }
        return [a for a in assignments if a.step_id in active]

    @staticmethod
    def _load_assignments(cursor) -> List[Assignment]:
        assignments = []
        for doc in cursor:
            doc.pop("_id", None)
            assignments.append(Assignment.model_validate(doc))
        return assignments
