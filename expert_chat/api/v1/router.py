"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from expert_chat.api.v1 import experts

api_router = APIRouter()

api_router.include_router(experts.router, prefix="/experts", tags=["experts"])
