from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Request

from . import storage
from .config import get_settings
from .errors import RunNotFound

router = APIRouter()


def _orchestrator(request: Request):
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        raise HTTPException(status_code=500, detail="orchestrator not bound")
    return orch


def _check_token(x_admin_token: Optional[str]) -> None:
    token = get_settings().ADMIN_TOKEN
    if token and x_admin_token != token:
        raise HTTPException(status_code=401, detail="unauthorized")


@router.get("/runs/{run_id}")
async def run_state(run_id: str, request: Request) -> Dict[str, Any]:
    orch = _orchestrator(request)
    try:
        state = await orch.get_run_state(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail=f"run {run_id} not found")
    return state.to_dict()


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str, request: Request, x_admin_token: str = Header(None, alias="X-Admin-Token")) -> Dict[str, Any]:
    _check_token(x_admin_token)
    orch = _orchestrator(request)
    try:
        state = await orch.cancel(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail=f"run {run_id} not found")
    return {"cancel_requested": True, "status": state.status.value}


@router.get("/runs/{run_id}/ledger")
async def run_ledger(run_id: str, request: Request) -> Dict[str, Any]:
    orch = _orchestrator(request)
    return {
        "run_id": run_id,
        "total_usd": await orch.ledger.persisted_total(run_id),
        "by_agent": orch.ledger.totals_by_agent(run_id),
    }


@router.get("/outbox")
async def outbox_list(request: Request, status: str = "pending", max_items: int = 100) -> Dict[str, Any]:
    orch = _orchestrator(request)
    if orch.sessionmaker is None:
        raise HTTPException(status_code=500, detail="no structured store configured")
    items = await storage.list_outbox(orch.sessionmaker, status=status or None, limit=max_items)
    return {"count": len(items), "items": items}


@router.post("/outbox/reconcile")
async def outbox_reconcile(request: Request, x_admin_token: str = Header(None, alias="X-Admin-Token")) -> Dict[str, Any]:
    _check_token(x_admin_token)
    orch = _orchestrator(request)
    reconciler = getattr(request.app.state, "reconciler", None) or orch.reconciler
    if reconciler is None:
        raise HTTPException(status_code=500, detail="reconciler not configured")
    applied = await reconciler.run_once()
    return {"applied": applied}


@router.get("/limits")
async def limits() -> Dict[str, Any]:
    cfg = get_settings()
    return {
        "budget_policy": cfg.BUDGET_POLICY,
        "budget_ceiling_usd": cfg.BUDGET_CEILING_USD,
        # accepted as configuration only; not enforced by the engine
        "anon_rate_limit_per_minute": cfg.ANON_RATE_LIMIT_PER_MINUTE,
    }
