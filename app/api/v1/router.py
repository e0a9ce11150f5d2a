from fastapi import APIRouter
from app.api.v1.routes import subscriptions, assignments, webhooks

api_router = APIRouter()

api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(assignments.router, prefix="/assignments", tags=["assignments"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
