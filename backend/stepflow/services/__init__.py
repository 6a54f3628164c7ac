"""Service modules - Business logic layer"""
from .rbac_service import RbacResolver, MongoRbacResolver, get_rbac_resolver

__all__ = [
    "RbacResolver",
    "MongoRbacResolver",
    "get_rbac_resolver",
]
