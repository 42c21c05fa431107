"""
Router registration utilities for FastAPI application.

This module provides a centralized way to register all API routers
across the application, used by both the main app and test fixtures.
"""

from fastapi import FastAPI

# Import all routers
from federation.api.v1.health import router as health_router
from federation.api.v1.oauth import router as oauth_router
from federation.api.v1.sso import router as sso_router
from federation.api.v1.admin import router as admin_router


def include_routers(app: FastAPI):
    """
    Include all API routers in the FastAPI application.

    This function centralizes router registration to ensure consistency
    between the main application and test fixtures.
    """
    app.include_router(health_router, tags=["health"])
    app.include_router(oauth_router, prefix="/oauth", tags=["oauth"])
    app.include_router(sso_router, prefix="/sso", tags=["sso"])
    app.include_router(admin_router, prefix="/admin", tags=["admin"])
