# API Package - Centralized imports
# Allows easy importing of all routers and functions

from .auth import router as auth_router, get_current_user, create_access_token
from .programs import router as programs_router
from .assignments import router as assignments_router
from .scheduling import admin_router as scheduling_admin_router, router as scheduling_router
from .super_admin import router as super_admin_router
from .billing import router as billing_router
from .admin import router as admin_router
from .patients import router as patients_router

__all__ = [
    # Auth
    "auth_router",
    "get_current_user",
    "create_access_token",

    # Routers
    "programs_router",
    "assignments_router",
    "scheduling_admin_router",
    "scheduling_router",
    "super_admin_router",
    "billing_router",
    "admin_router",
    "patients_router",
]
