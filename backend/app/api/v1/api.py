from fastapi import APIRouter

from .endpoints import exams, results, proctor, health

api_router = APIRouter()

api_router.include_router(exams.router, prefix="/exams", tags=["exams"])
api_router.include_router(results.router, prefix="/results", tags=["results"])
api_router.include_router(proctor.router, prefix="/proctor", tags=["proctor"])
api_router.include_router(health.router, prefix="/health", tags=["health"])
