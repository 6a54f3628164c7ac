"""
Instance Routes Module

- lifecycle.py: Start and cancel instances
- actions.py: Complete steps, submit forms, vote
- info.py: Lists, detail, active steps, history, votes

All routes are combined into a single router for inclusion in the API.
"""

from fastapi import APIRouter

from .schemas import (
    StartInstanceRequest, CancelInstanceRequest, InstanceListResponse,
    CompleteStepRequest, SubmitFormRequest, VoteRequest
)
from .info import router as info_router
from .lifecycle import router as lifecycle_router
from .actions import router as actions_router

router = APIRouter()

# /stuck must be registered before /{instance_id}
router.include_router(info_router)
router.include_router(lifecycle_router)
router.include_router(actions_router)

__all__ = [
    "router",
    "StartInstanceRequest", "CancelInstanceRequest", "InstanceListResponse",
    "CompleteStepRequest", "SubmitFormRequest", "VoteRequest",
]
