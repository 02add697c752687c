from fastapi import APIRouter
from courtflow.api.v1.routes.holds import router as holds_router
from courtflow.api.v1.routes.navigation import router as navigation_router
from courtflow.api.v1.routes.bookings import router as bookings_router
from courtflow.api.v1.routes.payments import router as payments_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(holds_router)
api_router.include_router(navigation_router)
api_router.include_router(bookings_router)
api_router.include_router(payments_router)
