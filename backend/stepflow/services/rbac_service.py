"""RBAC Service - Role/department membership lookups used by the engine"""
from typing import Any, Dict, List, Optional, Protocol

from pymongo.collection import Collection

from ..config.settings import settings
from ..domain.enums import EntityKind
from ..domain.errors import NotFoundError
from ..repositories.mongo_client import get_collection
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RbacResolver(Protocol):
    """
    Permission collaborator consulted by the engine

    The engine enforces that an eligible actor acted; who is eligible is
    decided entirely here.
    """

    def entity_exists(self, entity_ref: str) -> bool:
        ...

    def eligible_users(self, entity_ref: str) -> List[str]:
        ...

    def can_act(self, user_id: str, entity_ref: str) -> bool:
        ...

    def is_superuser(self, user_id: str) -> bool:
        ...


class MongoRbacResolver:
    """
    Default resolver backed by the `rbac_entities` collection

    Document shape:
        {"entity_ref": "finance-approvers", "kind": "ROLE",
         "name": "Finance approvers", "members": ["u1", "u2"]}
    """

    def __init__(self, superuser_ids: Optional[List[str]] = None):
        self._entities: Collection = get_collection("rbac_entities")
        self._superusers = set(
            superuser_ids if superuser_ids is not None else settings.superuser_ids_list
        )

    # =========================================================================
    # Resolver contract
    # =========================================================================

    def entity_exists(self, entity_ref: str) -> bool:
        return self._entities.find_one({"entity_ref": entity_ref}) is not None

    def eligible_users(self, entity_ref: str) -> List[str]:
        doc = self._entities.find_one({"entity_ref": entity_ref})
        if not doc:
            logger.warning(f"RBAC entity {entity_ref} not found, no eligible users")
            return []
        return list(doc.get("members", []))

    def can_act(self, user_id: str, entity_ref: str) -> bool:
        if self.is_superuser(user_id):
            return True
        return self._entities.find_one(
            {"entity_ref": entity_ref, "members": user_id}
        ) is not None

    def is_superuser(self, user_id: str) -> bool:
        return user_id in self._superusers

    # =========================================================================
    # Membership administration
    # =========================================================================

    def upsert_entity(
        self,
        entity_ref: str,
        kind: EntityKind,
        members: List[str],
        name: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create or replace an entity and its member list"""
        doc = {
            "_id": entity_ref,
            "entity_ref": entity_ref,
            "kind": kind.value,
            "name": name or entity_ref,
            "members": sorted(set(members)),
            "updated_at": utc_now().isoformat(),
        }
        self._entities.replace_one({"entity_ref": entity_ref}, doc, upsert=True)
        logger.info(f"Upserted RBAC entity {entity_ref} with {len(doc['members'])} members")
        doc.pop("_id")
        return doc

    def add_member(self, entity_ref: str, user_id: str) -> None:
        """Add a user to an entity"""
        result = self._entities.update_one(
            {"entity_ref": entity_ref},
            {"$addToSet": {"members": user_id}}
        )
        if result.matched_count == 0:
            raise NotFoundError(f"RBAC entity {entity_ref} not found")

    def remove_member(self, entity_ref: str, user_id: str) -> None:
        """Remove a user from an entity"""
        result = self._entities.update_one(
            {"entity_ref": entity_ref},
            {"$pull": {"members": user_id}}
        )
        if result.matched_count == 0:
            raise NotFoundError(f"RBAC entity {entity_ref} not found")

    def list_entities(self) -> List[Dict[str, Any]]:
        """List all entities"""
        entities = []
        for doc in self._entities.find({}).sort("entity_ref", 1):
            doc.pop("_id", None)
            entities.append(doc)
        return entities


def get_rbac_resolver() -> RbacResolver:
    """Resolver used by services unless one is injected"""
    return MongoRbacResolver()
