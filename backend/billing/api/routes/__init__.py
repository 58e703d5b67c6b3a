from .jobs import router as jobs_router
from .payments import router as payments_router
from .push import router as push_router
from .webhooks import router as webhook_router

__all__ = ["jobs_router", "payments_router", "push_router", "webhook_router"]
