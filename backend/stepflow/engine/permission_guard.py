"""Permission Guard - Authorization enforcement for engine commands"""

from ..domain.models import WorkflowInstance, NodeTemplate
from ..domain.errors import PermissionDeniedError
from ..services.rbac_service import RbacResolver
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PermissionGuard:
    """
    Permission enforcement for instance operations

    Rules:
    - Superusers may act on any node and cancel any instance
    - Nodes with an entity_ref accept only users the RBAC resolver approves
    - Nodes without an entity_ref accept any identified actor
    - Cancel: the user who started the instance, or anyone when the starter
      is unknown
    """

    def __init__(self, rbac: RbacResolver):
        self.rbac = rbac

    def can_act_on_node(self, user_id: str, node: NodeTemplate) -> bool:
        """Check whether a user may complete/vote on/submit a node"""
        if self.rbac.is_superuser(user_id):
            return True
        if not node.entity_ref:
            return True
        return self.rbac.can_act(user_id, node.entity_ref)

    def ensure_can_act_on_node(
        self,
        user_id: str,
        instance: WorkflowInstance,
        node: NodeTemplate
    ) -> None:
        """Raise PermissionDeniedError unless the user may act on the node"""
        if not self.can_act_on_node(user_id, node):
            logger.warning(
                f"User {user_id} denied on node {node.node_id}",
                extra={"instance_id": instance.instance_id, "node_id": node.node_id, "actor_id": user_id}
            )
            raise PermissionDeniedError(
                f"User {user_id} may not act on node {node.node_id}",
                details={
                    "instance_id": instance.instance_id,
                    "node_id": node.node_id,
                    "entity_ref": node.entity_ref,
                }
            )

    def can_cancel(self, user_id: str, instance: WorkflowInstance) -> bool:
        """Check whether a user may cancel an instance"""
        if self.rbac.is_superuser(user_id):
            return True
        return instance.started_by is None or instance.started_by == user_id

    def ensure_can_cancel(self, user_id: str, instance: WorkflowInstance) -> None:
        """Raise PermissionDeniedError unless the user may cancel"""
        if not self.can_cancel(user_id, instance):
            raise PermissionDeniedError(
                f"User {user_id} may not cancel instance {instance.instance_id}",
                details={"instance_id": instance.instance_id}
            )
