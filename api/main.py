"""FastAPI server for modelgate."""

from __future__ import annotations

import os
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Header, Depends, Request
from pydantic import BaseModel, Field

from modelgate import Broker, BrokerConfig, __version__, build_services


def _get_api_key() -> Optional[str]:
    return os.getenv("MODELGATE_API_KEY")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _broker(request: Request) -> Broker:
    broker = getattr(request.app.state, "broker", None)
    if broker is None:
        config = BrokerConfig.from_env()
        if not config.db_path:
            config.db_path = "modelgate.db"
        broker = Broker(build_services(config))
        request.app.state.broker = broker
    return broker


app = FastAPI(title="modelgate API", version=__version__)


class ChooseRequest(BaseModel):
    candidates: Optional[List[str]] = None
    policy: str = Field("fastest", pattern="^(fastest|cheapest|smartest)$")
    tenant_key: Optional[str] = None
    task_type: Optional[str] = None


class EnqueueRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    priority: float = Field(0, ge=-100, le=100)
    reason: str = ""
    tenant_key: Optional[str] = None
    payload: Optional[Any] = None


class DequeueRequest(BaseModel):
    active_tenant_key: Optional[str] = None


class SweepRequest(BaseModel):
    now: Optional[int] = None


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/models", dependencies=[Depends(_require_api_key)])
def models(broker: Broker = Depends(_broker)) -> Dict[str, Any]:
    entries = sorted(broker.services.registry, key=lambda e: e.spec)
    return {"models": [entry.to_dict() for entry in entries]}


@app.post("/choose", dependencies=[Depends(_require_api_key)])
async def choose(req: ChooseRequest, broker: Broker = Depends(_broker)) -> Dict[str, Any]:
    result = await broker.choose(
        req.candidates,
        req.policy,
        tenant_key=req.tenant_key,
        task_type=req.task_type,
    )
    if not result.chosen_model_spec:
        raise HTTPException(status_code=422, detail="No valid model among candidates")
    return result.to_dict()


@app.get("/budget/{provider}", dependencies=[Depends(_require_api_key)])
async def budget(provider: str, model: Optional[str] = None, broker: Broker = Depends(_broker)) -> Dict[str, Any]:
    store = broker.services.budget
    snapshot = await store.get_snapshot(provider, model)
    availability = await store.get_availability(provider, model)
    return {
        "snapshot": snapshot.to_dict(),
        "availability": availability.to_dict(),
        "cooldown_remaining_ms": await store.cooldown_remaining_ms(provider),
    }


@app.post("/queue/enqueue", dependencies=[Depends(_require_api_key)])
async def enqueue(req: EnqueueRequest, broker: Broker = Depends(_broker)) -> Dict[str, Any]:
    entry = await broker.services.queue.enqueue(
        req.job_id,
        priority=req.priority,
        reason=req.reason,
        tenant_key=req.tenant_key,
        payload=req.payload,
    )
    return entry.to_dict()


@app.post("/queue/dequeue", dependencies=[Depends(_require_api_key)])
async def dequeue(req: DequeueRequest, broker: Broker = Depends(_broker)) -> Dict[str, Any]:
    entry = await broker.services.queue.dequeue_next(active_tenant_key=req.active_tenant_key)
    return {"entry": entry.to_dict() if entry else None}


@app.get("/queue/stats", dependencies=[Depends(_require_api_key)])
async def queue_stats(broker: Broker = Depends(_broker)) -> Dict[str, Any]:
    return await broker.services.queue.stats()


@app.get("/inflight", dependencies=[Depends(_require_api_key)])
async def inflight(broker: Broker = Depends(_broker)) -> Dict[str, Any]:
    records = await broker.services.ledger.get_all()
    return {"records": [records[request_id].to_dict() for request_id in sorted(records)]}


@app.post("/inflight/sweep", dependencies=[Depends(_require_api_key)])
async def sweep(req: SweepRequest, broker: Broker = Depends(_broker)) -> Dict[str, Any]:
    report = await broker.sweep(now=req.now)
    return report.to_dict()


@app.get("/events", dependencies=[Depends(_require_api_key)])
def events(
    limit: int = 50,
    before: Optional[int] = None,
    tag: Optional[str] = None,
    broker: Broker = Depends(_broker),
) -> Dict[str, Any]:
    log = broker.services.events
    if tag:
        selected = log.find(tag)[-limit:]
    elif before is not None:
        selected = log.before(before, limit)
    else:
        selected = log.tail(limit)
    return {
        "events": [event.to_dict() for event in selected],
        "last_seq": log.last_seq,
        "stats": log.get_stats(),
    }
