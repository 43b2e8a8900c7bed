from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from agentrun.apps.api.response import success_response

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/health")
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))
