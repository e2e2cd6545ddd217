from fastapi import APIRouter

from loadhunter_api.api.routes import admin, broker_checks, health, hunt_plans, maintenance, matches, queue

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(queue.router, prefix="/queue", tags=["worker"])
api_router.include_router(broker_checks.router, prefix="/broker-checks", tags=["worker"])
api_router.include_router(maintenance.router, prefix="/maintenance", tags=["worker"])
api_router.include_router(matches.router, prefix="/matches", tags=["dispatch"])
api_router.include_router(hunt_plans.router, prefix="/hunt-plans", tags=["dispatch"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
