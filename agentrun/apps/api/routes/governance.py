from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.apps.api.deps import get_actor, get_db, get_run_orchestrator
from agentrun.apps.api.response import success_response
from agentrun.domain.state import Actor
from agentrun.services.governance import rate_limit_headers
from agentrun.services.orchestrator import RunOrchestrator

router = APIRouter(prefix="/governance", tags=["governance"])


@router.get("/status")
async def governance_status(
    request: Request,
    response: Response,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    orchestrator: RunOrchestrator = Depends(get_run_orchestrator),
) -> dict:
    # Read-only view of every gate for the calling user; nothing is incremented.
    governor = orchestrator.governor
    usage = await governor.rate_limit_snapshot(actor.user_id, actor.tenant_id)
    budget = await governor.check_budget(db, actor.user_id, actor.tenant_id)
    breaker = await governor.breaker_state(orchestrator.provider_name)
    response.headers.update(rate_limit_headers(usage))
    data = {
        "rate_limits": [
            {"window": window.name, "count": window.count, "limit": window.limit, "remaining": window.remaining}
            for window in usage
        ],
        "budget": budget.as_dict(),
        "provider": {
            "name": orchestrator.provider_name,
            "model": orchestrator.model,
            "circuit": breaker.state.value,
            "failure_count": breaker.failure_count,
            "available": await governor.provider_available(orchestrator.provider_name),
        },
    }
    return success_response(request=request, data=data)
