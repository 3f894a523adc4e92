from .auth_ui import router as auth_ui_router
from .equipment_api import router as equipment_api_router
from .equipment_ui import router as equipment_ui_router
from .integrity import router as integrity_router
from .loans import router as loans_router
from .notifications import router as notifications_router
from .users_ui import router as users_ui_router

ALL_ROUTERS = (
    auth_ui_router,
    equipment_api_router,
    equipment_ui_router,
    loans_router,
    users_ui_router,
    notifications_router,
    integrity_router,
)
