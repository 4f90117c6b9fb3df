"""
Autonome - main entry point

Initializes all modules, wires them together, starts the server.
One file to understand how everything connects.

Usage:
    python main.py              # Start the agent (API + profit engine)
    uvicorn main:app            # Or via uvicorn directly
"""

import os
import re
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn

from core.config import AgentConfig, load_config, load_env_files

# ============================================================
# BOOTSTRAP
# ============================================================

load_env_files()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("autonome.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.constants import get_explorer_tx_url
from core.event_bus import EventBus
from core.ledger import LedgerStore, StateKey
from core.metrics import MetricsAggregator
from core.profit_engine import ProfitEngine
from core.skill_client import SkillClient
from core.x402 import X402Signer
from services.intelligence import IntelligenceService
from api.paywall import PaymentGate
from api.server import create_app


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ============================================================
# WIRING
# ============================================================

class Agent:
    """Every long-lived component, built once from config."""

    def __init__(self, config: AgentConfig):
        self.config = config
        self.event_bus = EventBus()
        self.ledger = LedgerStore(config.db_path)
        self.metrics = MetricsAggregator(self.ledger)
        self.signer = X402Signer(config.private_key, config.network)
        self.skills = SkillClient(
            config.skills_base_url,
            signer=self.signer,
            timeout_seconds=config.skill_timeout_seconds,
        )
        self.intelligence = IntelligenceService(
            self.skills, self.ledger, self.event_bus,
            enrichment_url=config.enrichment_url,
        )
        self.profit_engine = ProfitEngine(
            self.ledger, self.metrics, self.skills, self.event_bus,
            wallet_address=config.wallet_address,
            threshold=config.reinvest_threshold,
            percentage=config.reinvest_percentage,
            interval_seconds=config.profit_check_interval,
        )
        self.paywall = PaymentGate(
            enabled=config.paywall_enabled,
            pay_to=config.wallet_address,
            network=config.network,
            facilitator_url=config.facilitator_url,
            timeout_seconds=config.skill_timeout_seconds,
        )

    def _log_reinvestment(self, event):
        if event.type == "reinvest:completed":
            tx = event.data.get("txHash")
            if tx and tx != "unknown":
                logger.info(f"Reinvestment tx: {get_explorer_tx_url(tx, self.config.network)}")

    async def start(self):
        self.ledger.init_schema()
        self.event_bus.subscribe(self._log_reinvestment)
        self.ledger.set_state(StateKey.STATUS, "starting")
        self.ledger.set_state(StateKey.STARTED_AT, _utc_iso())

        if not await self.profit_engine.update_wallet_balance():
            logger.warning("Initial balance check failed; continuing with stored balances")

        self.profit_engine.start()
        self.ledger.set_state(StateKey.STATUS, "running")
        self.event_bus.emit("agent:started", {
            "wallet": self.config.wallet_address,
            "network": self.config.network,
        })

    async def stop(self):
        self.profit_engine.stop()
        self.ledger.set_state(StateKey.STATUS, "stopped")
        self.ledger.set_state(StateKey.STOPPED_AT, _utc_iso())
        self.event_bus.emit("agent:stopped", {})
        await self.skills.close()
        await self.paywall.close()
        self.ledger.close()


_agent: Optional[Agent] = None


# ============================================================
# APP LIFECYCLE
# ============================================================

@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    agent = _agent
    logger.info("=" * 60)
    logger.info("Autonome is waking up...")
    logger.info(f"Wallet: {agent.config.wallet_address} on {agent.config.network}")
    logger.info(f"Payer: {agent.signer.address}")
    logger.info("=" * 60)

    await agent.start()

    m = agent.metrics.compute_metrics()
    logger.info(f"Revenue: ${m.total_revenue}, expenses: ${m.total_expenses}, profit: ${m.total_profit}")
    logger.info(f"Paywall: {'on' if agent.paywall.enabled else 'OFF (demo mode)'}")
    logger.info(f"Autonome is alive. Intel at {agent.config.intel_price}, quick check at {agent.config.quick_check_price}.")

    yield

    # Shutdown
    logger.info("Autonome shutting down...")
    await agent.stop()
    logger.info("Goodbye.")


def create_autonome_app(config: Optional[AgentConfig] = None):
    """Create the fully wired FastAPI app."""
    global _agent
    config = config or load_config()
    _agent = Agent(config)
    # Schema before the first request; start() re-runs it idempotently
    _agent.ledger.init_schema()

    app = create_app(
        ledger=_agent.ledger,
        metrics=_agent.metrics,
        intelligence=_agent.intelligence,
        skills=_agent.skills,
        event_bus=_agent.event_bus,
        paywall=_agent.paywall,
        intel_price=config.intel_price_usd,
        quick_check_price=config.quick_check_price_usd,
        profit_engine=_agent.profit_engine,
        network=config.network,
    )

    # Replace the default lifespan with ours
    app.router.lifespan_context = lifespan

    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_autonome_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = _agent.config.skill_server_port
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
