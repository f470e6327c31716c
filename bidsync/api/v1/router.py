from fastapi import APIRouter

from bidsync.api.v1.health import router as health_router
from bidsync.api.v1.view import router as view_router
from bidsync.api.v1.session import router as session_router
from bidsync.api.v1.bids import router as bids_router
from bidsync.api.v1.rounds import router as rounds_router

v1_router = APIRouter()

# ------------------------------------------------------------------
# READ
# ------------------------------------------------------------------
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(view_router, tags=["view"])

# ------------------------------------------------------------------
# SESSION / TEAM
# ------------------------------------------------------------------
v1_router.include_router(session_router, tags=["session"])
v1_router.include_router(bids_router, tags=["bids"])

# ------------------------------------------------------------------
# OPERATOR
# ------------------------------------------------------------------
v1_router.include_router(rounds_router, tags=["rounds"])
