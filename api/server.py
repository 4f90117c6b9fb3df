"""
Autonome API Server - FastAPI Backend

Paid (x402):
- GET  /intel/{address}        Full wallet intelligence report
- GET  /check/{address}        Quick balance + risk check
- GET  /catalog                Skill discovery (free)

Dashboard (free, read-mostly):
- GET  /api/metrics            Aggregated revenue / expenses / profit
- GET  /api/transactions       Recent ledger entries
- GET  /api/timeseries         Cumulative profit curve (1-minute buckets)
- GET  /api/reinvestments      Reinvestment history
- GET  /api/activity           Recent agent events (ring buffer)
- GET  /api/agent/status       Status label + balances + metrics
- POST /api/agent/start        Status label → running
- POST /api/agent/stop         Status label → stopped
- POST /api/intel              Manual demo report (books revenue directly)
- GET  /api/events             SSE: metrics + transactions every 2s, live agent events
- GET  /health                 Liveness

No auth: payment = access. Malformed addresses are rejected before any
payment check or metered call.
"""

import re
import json
import asyncio
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from core.constants import ADDRESS_PATTERN, DEFAULTS, skill_cost
from core.event_bus import AgentEvent, EventBus
from core.ledger import LedgerStore, StateKey, StorageError
from core.metrics import MetricsAggregator
from core.profit_engine import ProfitEngine
from core.skill_client import SkillClient
from services.intelligence import (
    DEFAULT_BALANCES,
    IntelligenceService,
    _extract_price,
    safe_parse_float,
)
from services.scoring import quick_risk_score
from api.paywall import PaymentGate, PaymentRequired

logger = logging.getLogger("autonome.api")

_ADDRESS_RE = re.compile(ADDRESS_PATTERN)


# ============================================================
# MODELS
# ============================================================

class IntelRequest(BaseModel):
    address: str = Field(..., max_length=100)


class AgentControlResponse(BaseModel):
    status: str
    message: str


def is_valid_address(address: str) -> bool:
    return bool(address) and bool(_ADDRESS_RE.match(address))


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    ledger: LedgerStore,
    metrics: MetricsAggregator,
    intelligence: IntelligenceService,
    skills: SkillClient,
    event_bus: EventBus,
    paywall: PaymentGate,
    intel_price: Decimal,
    quick_check_price: Decimal,
    profit_engine: Optional[ProfitEngine] = None,
    network: str = DEFAULTS.NETWORK,
    sse_interval: float = DEFAULTS.SSE_PUSH_INTERVAL_SECONDS,
    sse_max_lifetime: float = DEFAULTS.SSE_MAX_LIFETIME_SECONDS,
) -> FastAPI:
    """
    Create the FastAPI app wired to the agent's components.

    Every component is passed in; nothing here reaches for globals.
    """
    app = FastAPI(
        title="Autonome - autonomous economic agent",
        description="Pay-per-call wallet intelligence. Profits are reinvested automatically.",
        version="0.1.0",
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PaymentRequired)
    async def _payment_required(request: Request, exc: PaymentRequired):
        return JSONResponse(status_code=402, content=exc.to_body())

    def _require_address(address: str):
        if not is_valid_address(address):
            raise HTTPException(400, "Invalid Ethereum address. Must be 0x followed by 40 hex characters.")

    def _agent_status() -> str:
        return ledger.get_state(StateKey.STATUS, "unknown")

    def _metrics_payload() -> dict:
        return {**metrics.compute_metrics().to_dict(), "agentStatus": _agent_status()}

    def _storage_failed(view: str, error: StorageError):
        logger.warning(f"Storage read failed for /api/{view}: {error}")
        event_bus.emit("storage:error", {"view": view, "error": str(error)})

    def _degraded(view: str, error: StorageError) -> list:
        """List views fall back to empty on a storage failure; the failure is still reported."""
        _storage_failed(view, error)
        return []

    def _breakdown(price: Decimal, cost: Decimal) -> dict:
        return {
            "price": f"{price:.2f}",
            "cost": f"{cost:.2f}",
            "profit": f"{price - cost:.2f}",
        }

    async def _run_report(address: str, source: str):
        """Synthesize a report; revenue is booked by the caller after payment settles."""
        event_bus.emit("intel:request", {"address": address, "source": source})
        try:
            report = await intelligence.synthesize(address)
        except StorageError as e:
            logger.error(f"Intel error for {address}: {e}")
            event_bus.emit("intel:failed", {"address": address, "error": str(e)})
            raise HTTPException(500, "Failed to generate intelligence report")
        return report

    async def _settle(charge, address: str, cost: Decimal, kind: str):
        """Collect payment for finished work. Skill costs are already booked either way."""
        try:
            return await paywall.settle(charge)
        except PaymentRequired as e:
            logger.error(f"Settlement failed for {address} after ${cost:.2f} of skills: {e.error}")
            event_bus.emit("intel:failed", {
                "address": address,
                "type": kind,
                "error": f"settlement failed: {e.error}",
                "unrecoveredCost": f"{cost:.2f}",
            })
            raise

    def _book_revenue(address: str, price: Decimal, cost: Decimal, kind: str = "intel"):
        try:
            ledger.record_revenue(price, address)
        except StorageError as e:
            logger.error(f"Revenue booking failed for {address}: {e}")
            event_bus.emit("intel:failed", {"address": address, "error": str(e)})
            raise HTTPException(500, "Failed to record payment")
        profit = price - cost
        logger.info(f"{kind} complete: revenue=${price:.2f}, cost=${cost:.2f}, profit=${profit:.2f}")
        event_bus.emit("intel:completed", {
            "address": address,
            "revenue": f"{price:.2f}",
            "cost": f"{cost:.2f}",
            "profit": f"{profit:.2f}",
            "type": kind,
        })

    # ============================================================
    # PAID ROUTES
    # ============================================================

    @app.get("/intel/{address}")
    async def intel(address: str, request: Request):
        """Full intelligence report."""
        _require_address(address)
        charge = await paywall.require(request, intel_price, "Wallet intelligence report")

        logger.info(f"Intel request for {address}")
        report = await _run_report(address, "x402")
        charge = await _settle(charge, address, report.cost_to_generate, "intel")
        _book_revenue(address, intel_price, report.cost_to_generate)

        return JSONResponse(
            content={
                "status": "success",
                "report": report.to_dict(),
                "meta": {
                    "poweredBy": "Autonome × PinionOS",
                    "skillsUsed": report.skills_used,
                    "costToGenerate": f"{report.cost_to_generate:.2f}",
                    **_breakdown(intel_price, report.cost_to_generate),
                },
            },
            headers=charge.response_headers(),
        )

    @app.get("/check/{address}")
    async def quick_check(address: str, request: Request):
        """Balance + price, simplified risk. No AI."""
        _require_address(address)
        charge = await paywall.require(request, quick_check_price, "Quick wallet health check")
        event_bus.emit("intel:request", {"address": address, "type": "quick-check"})

        cost = Decimal(0)
        bal = await skills.balance(address)
        if not bal.ok:
            event_bus.emit("skill:failed", {"skill": "balance", "error": bal.error})
            event_bus.emit("intel:failed", {"address": address, "type": "quick-check", "error": bal.error})
            raise HTTPException(502, f"Balance lookup failed: {bal.error}")
        ledger.record_expense(bal.skill, bal.cost)
        cost += bal.cost
        event_bus.emit("skill:completed", {"skill": "balance", "cost": float(bal.cost)})

        price = await skills.price("ETH")
        if price.ok:
            ledger.record_expense(price.skill, price.cost)
            cost += price.cost
            event_bus.emit("skill:completed", {"skill": "price", "cost": float(price.cost)})
        else:
            event_bus.emit("skill:failed", {"skill": "price", "error": price.error})
        eth_price = _extract_price(price.data) if price.ok else 0.0

        balances = bal.value_or(DEFAULT_BALANCES, key="balances")
        if not isinstance(balances, dict):
            balances = DEFAULT_BALANCES
        eth = safe_parse_float(balances.get("ETH"))
        usdc = safe_parse_float(balances.get("USDC"))

        charge = await _settle(charge, address, cost, "quick-check")
        _book_revenue(address, quick_check_price, cost, kind="quick-check")

        return JSONResponse(
            content={
                "address": address,
                "balances": balances,
                "ethPriceUsd": f"{eth_price:.2f}",
                "valueUsd": f"{eth * eth_price + usdc:.2f}",
                "riskScore": quick_risk_score(eth, usdc),
                "health": "empty" if eth == 0 and usdc == 0 else "active",
                "meta": _breakdown(quick_check_price, cost),
            },
            headers=charge.response_headers(),
        )

    @app.get("/catalog")
    async def catalog():
        """Skill discovery (free)."""
        intel_cost = sum((skill_cost(s) for s in ("balance", "price", "fund", "chat")), Decimal(0))
        return {
            "skills": [
                {
                    "name": "intel",
                    "endpoint": "/intel/{address}",
                    "method": "GET",
                    "price": f"${intel_price:.2f}",
                    "description": (
                        "AI-powered on-chain wallet intelligence report with risk scoring, "
                        "behavioral categorization, portfolio analysis, and actionable recommendations."
                    ),
                    "estimatedCost": f"{intel_cost:.2f}",
                },
                {
                    "name": "quick-check",
                    "endpoint": "/check/{address}",
                    "method": "GET",
                    "price": f"${quick_check_price:.2f}",
                    "description": "Quick wallet health check with risk score. Faster and cheaper than the full report.",
                    "estimatedCost": f"{skill_cost('balance') + skill_cost('price'):.2f}",
                },
            ],
            "payment": {"protocol": "x402", "network": network, "asset": "USDC", "enabled": paywall.enabled},
        }

    # ============================================================
    # DASHBOARD ROUTES
    # ============================================================

    @app.get("/api/metrics")
    async def get_metrics():
        try:
            return _metrics_payload()
        except StorageError as e:
            _storage_failed("metrics", e)
            raise HTTPException(500, str(e))

    @app.get("/api/transactions")
    async def get_transactions(limit: int = 100):
        try:
            return [e.to_dict() for e in ledger.recent_entries(min(max(limit, 1), 500))]
        except StorageError as e:
            return _degraded("transactions", e)

    @app.get("/api/timeseries")
    async def get_timeseries(hours: float = 24, fill_gaps: bool = True):
        try:
            return [p.to_dict() for p in metrics.time_series(hours, fill_gaps=fill_gaps)]
        except StorageError as e:
            return _degraded("timeseries", e)

    @app.get("/api/reinvestments")
    async def get_reinvestments():
        try:
            return [
                {"id": e.id, "amount": float(e.amount), "txHash": e.tx_ref, "createdAt": e.created_at}
                for e in ledger.reinvestment_history()
            ]
        except StorageError as e:
            return _degraded("reinvestments", e)

    @app.get("/api/activity")
    async def get_activity(count: int = 50):
        return [e.to_dict() for e in event_bus.recent(min(max(count, 0), 200))]

    @app.get("/api/agent/status")
    async def agent_status():
        try:
            state = ledger.all_state()

            def value(key: str, default=None):
                return state[key]["value"] if key in state else default

            return {
                "status": value(StateKey.STATUS, "unknown"),
                "startedAt": value(StateKey.STARTED_AT),
                "wallet": {
                    "eth": value(StateKey.ETH_BALANCE, "0"),
                    "usdc": value(StateKey.USDC_BALANCE, "0"),
                    "updatedAt": state[StateKey.USDC_BALANCE]["updatedAt"] if StateKey.USDC_BALANCE in state else None,
                },
                "metrics": metrics.compute_metrics().to_dict(),
                "profitEngine": profit_engine.get_status() if profit_engine else None,
                "skills": skills.get_status(),
            }
        except StorageError as e:
            _storage_failed("agent/status", e)
            raise HTTPException(500, str(e))

    @app.post("/api/agent/start", response_model=AgentControlResponse)
    async def agent_start():
        """Label only: the background agent keeps its own lifecycle."""
        try:
            ledger.set_state(StateKey.STATUS, "running")
            ledger.set_state(StateKey.STARTED_AT, _utc_iso())
        except StorageError as e:
            raise HTTPException(500, str(e))
        event_bus.emit("agent:status", {"status": "running"})
        return AgentControlResponse(status="running", message="Agent status set to running.")

    @app.post("/api/agent/stop", response_model=AgentControlResponse)
    async def agent_stop():
        try:
            ledger.set_state(StateKey.STATUS, "stopped")
        except StorageError as e:
            raise HTTPException(500, str(e))
        event_bus.emit("agent:status", {"status": "stopped"})
        return AgentControlResponse(status="stopped", message="Agent status set to stopped.")

    @app.post("/api/intel")
    async def manual_intel(req: IntelRequest):
        """Dashboard demo: run the pipeline directly and book the standard price."""
        _require_address(req.address)
        report = await _run_report(req.address, "dashboard-demo")
        _book_revenue(req.address, intel_price, report.cost_to_generate)
        return {
            "status": "success",
            "report": report.to_dict(),
            "meta": {
                "poweredBy": "Autonome × PinionOS",
                "skillsUsed": report.skills_used,
                "costToGenerate": f"{report.cost_to_generate:.2f}",
                "triggeredFrom": "dashboard-demo",
            },
        }

    @app.get("/api/events")
    async def events():
        """
        Snapshot push stream. Closes itself after sse_max_lifetime seconds;
        the dashboard reconnects. The bus listener is removed on close.
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=100)
        dropped = 0

        def _on_event(event: AgentEvent):
            nonlocal dropped
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dropped += 1  # reported from the stream loop, never from inside emit()

        def _report_drops():
            nonlocal dropped
            if dropped:
                count, dropped = dropped, 0
                logger.warning(f"SSE client too slow: dropped {count} live events")
                event_bus.emit("sse:dropped", {"count": count})

        def _snapshot() -> list[str]:
            try:
                return [
                    _sse("metrics", _metrics_payload()),
                    _sse("transactions", [e.to_dict() for e in ledger.recent_entries(20)]),
                ]
            except StorageError as e:
                _storage_failed("events", e)
                return []

        async def _stream():
            unsubscribe = event_bus.subscribe(_on_event)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + sse_max_lifetime
            try:
                for frame in _snapshot():
                    yield frame
                next_push = loop.time() + sse_interval
                while True:
                    now = loop.time()
                    if now >= deadline:
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=min(next_push, deadline) - now)
                        yield _sse("agent-event", event.to_dict())
                    except asyncio.TimeoutError:
                        pass
                    if loop.time() >= next_push and loop.time() < deadline:
                        _report_drops()
                        for frame in _snapshot():
                            yield frame
                        next_push = loop.time() + sse_interval
            finally:
                unsubscribe()
                _report_drops()

        return StreamingResponse(
            _stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "agentStatus": _agent_status(), "timestamp": _utc_iso()}

    return app
