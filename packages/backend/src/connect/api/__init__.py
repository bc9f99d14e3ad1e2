"""API route aggregation.

All routers registered here get mounted in main.py. Paths are not
versioned: the session proxy forwards `/api/<method path>` verbatim to
`<api_url>/<method path>`.
"""

from fastapi import APIRouter

from connect.api.account import router as account_router
from connect.api.health import router as health_router

api_router = APIRouter()

api_router.include_router(health_router, tags=["health"])
api_router.include_router(account_router, tags=["account"])
