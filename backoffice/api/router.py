from fastapi import APIRouter

from backoffice.api.routes import (
    anchors,
    auth,
    compliance,
    deals,
    funding,
    health,
    instruments,
    settlement,
)

api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(auth.router)
api_router.include_router(deals.router)
api_router.include_router(compliance.router)
api_router.include_router(funding.router)
api_router.include_router(instruments.router)
api_router.include_router(settlement.router)
api_router.include_router(anchors.router)
