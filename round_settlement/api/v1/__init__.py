"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import rounds, settlement, webhook

api_router = APIRouter()

api_router.include_router(
    webhook.router,
    prefix="/webhook",
    tags=["webhook"]
)

api_router.include_router(
    rounds.router,
    prefix="/rounds",
    tags=["rounds"]
)

api_router.include_router(
    settlement.router,
    prefix="/settlement",
    tags=["settlement"]
)
