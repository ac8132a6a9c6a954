"""
API route modules.
"""

from silent_trust.api.routes.maintenance import router as maintenance_router
from silent_trust.api.routes.submissions import router as submissions_router
from silent_trust.api.routes.weights import router as weights_router

__all__ = [
    "maintenance_router",
    "submissions_router",
    "weights_router",
]
