from fastapi import APIRouter

from app.api.v1.endpoints import availability

api_router = APIRouter()

# Availability & reservation endpoints, scoped to a business
api_router.include_router(
    availability.router,
    prefix="/businesses/{business_id}/availability",
    tags=["availability"],
)
