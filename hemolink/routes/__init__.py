from fastapi import APIRouter

from hemolink.routes import cohorts, donors, events, hospitals, requests, transfusions

api_router = APIRouter()
api_router.include_router(donors.router)
api_router.include_router(requests.router)
api_router.include_router(hospitals.router)
api_router.include_router(cohorts.router)
api_router.include_router(transfusions.router)
api_router.include_router(events.router)
