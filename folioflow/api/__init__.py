from folioflow.api.reports import router as reports_router
from folioflow.api.webhooks import router as webhooks_router

__all__ = ["reports_router", "webhooks_router"]
