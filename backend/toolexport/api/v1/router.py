"""
API v1 Router
=============

Main router that combines all API v1 endpoints.
"""

from fastapi import APIRouter

from toolexport.api.v1.endpoints import exports

api_router = APIRouter()

api_router.include_router(
    exports.router,
    tags=["Exports"],
)
