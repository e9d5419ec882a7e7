"""API v1 router."""

from fastapi import APIRouter

from petrel.api.v1.policies import router as policies_router
from petrel.api.v1.tokens import router as tokens_router
from petrel.api.v1.volumes import router as volumes_router
from petrel.api.v1.workloads import router as workloads_router

router = APIRouter()

# Include sub-routers
router.include_router(workloads_router, prefix="/workloads", tags=["workloads"])
router.include_router(volumes_router, prefix="/volumes", tags=["volumes"])
router.include_router(policies_router, prefix="/policies", tags=["policies"])
router.include_router(tokens_router, prefix="/tokens", tags=["tokens"])
