"""
Autonome self-check
Covers: 7 subsystems against a throwaway ledger + scripted skills,
then the environment. Nothing here spends USDC or touches the network.

Usage:
    python selfcheck.py
"""
import sys, os, time, asyncio, traceback, tempfile
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

RESULTS = []
WARNINGS = []
ERRORS = []
START_TIME = time.time()

def ok(section, name, detail=""):
    RESULTS.append((section, name, "PASS", detail))
    print(f"  [PASS] {name}" + (f"  → {detail}" if detail else ""))

def warn(section, name, detail=""):
    RESULTS.append((section, name, "WARN", detail))
    WARNINGS.append((section, name, detail))
    print(f"  [WARN] {name}" + (f"  → {detail}" if detail else ""))

def fail(section, name, detail=""):
    RESULTS.append((section, name, "FAIL", detail))
    ERRORS.append((section, name, detail))
    print(f"  [FAIL] {name}" + (f"  → {detail}" if detail else ""))

def section(name):
    print(f"\n{'='*60}")
    print(f"  {name}")
    print(f"{'='*60}")

def run(coro):
    return asyncio.run(coro)

def check(sec, name, condition, detail=""):
    (ok if condition else fail)(sec, name, detail)


WORKDIR = Path(tempfile.mkdtemp(prefix="autonome_selfcheck_"))
WALLET = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"
AGENT = "0x" + "22" * 20


class ScriptedSkills:
    """Answers like the skill server would; `failing` names skills that error."""

    PAYLOADS = {
        "balance": {"balances": {"ETH": "2.0", "USDC": "500"}},
        "price": {"usd": 2500},
        "fund": {"funding": {"steps": []}},
        "chat": {"response": "Active DeFi user.\nRecommendation: hold a larger stable buffer.\nReview monthly."},
        "trade": {"swap": {"data": "0xswap"}},
        "broadcast": {"hash": "0x" + "cd" * 32},
    }

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def _answer(self, skill):
        from core.constants import skill_cost
        from core.skill_client import SkillResult
        self.calls.append(skill)
        if skill in self.failing:
            return SkillResult.failure(skill, "scripted failure")
        return SkillResult.success(skill, self.PAYLOADS.get(skill, {}), skill_cost(skill))

    async def balance(self, address): return await self._answer("balance")
    async def price(self, token="ETH"): return await self._answer("price")
    async def fund(self, address): return await self._answer("fund")
    async def chat(self, message): return await self._answer("chat")
    async def trade(self, src, dst, amount): return await self._answer("trade")
    async def broadcast(self, tx): return await self._answer("broadcast")
    async def pay_service(self, url): return await self._answer("payX402Service")
    def get_status(self): return {"calls_made": len(self.calls)}


# ================================================================
# SUBSYSTEM 1: CONSTANTS + CONFIG
# ================================================================
section("SUBSYSTEM 1 · CONSTANTS + CONFIG")
try:
    from core.constants import DEFAULTS, SKILL_COSTS, SUPPORTED_NETWORKS, skill_cost
    from core.config import ConfigError, parse_price
    ok("S1_config", "Module import")
    ok("S1_config", "DEFAULTS",
       f"intel={DEFAULTS.INTEL_PRICE} | quick={DEFAULTS.QUICK_CHECK_PRICE} | "
       f"threshold=${DEFAULTS.REINVEST_THRESHOLD} | reinvest={DEFAULTS.REINVEST_PERCENTAGE*100:.0f}%")
    ok("S1_config", "SKILL_COSTS", f"{len(SKILL_COSTS)} skills, unknown → ${skill_cost('nope')}")
    check("S1_config", "Networks", set(SUPPORTED_NETWORKS) == {"base", "base-sepolia"}, str(SUPPORTED_NETWORKS))
    check("S1_config", "parse_price('$0.08')", parse_price("$0.08") == Decimal("0.08"))
    try:
        parse_price("free")
        fail("S1_config", "ConfigError on bad price", "should have raised but did not")
    except ConfigError:
        ok("S1_config", "ConfigError raised on bad price")
except Exception as e:
    fail("S1_config", "FATAL", str(e)); traceback.print_exc()

# ================================================================
# SUBSYSTEM 2: LEDGER
# ================================================================
section("SUBSYSTEM 2 · LEDGER  (append-only SQLite)")
ledger = None
try:
    from core.ledger import EntryKind, LedgerStore, LedgerValidationError, StateKey
    ledger = LedgerStore(WORKDIR / "selfcheck.db")
    ledger.init_schema()
    ok("S2_ledger", "Schema created", str(WORKDIR / "selfcheck.db"))

    entry = ledger.record_revenue("0.08", WALLET)
    check("S2_ledger", "Revenue append", entry.id > 0 and entry.amount == Decimal("0.08"), f"id={entry.id}")
    for _ in range(10):
        ledger.record_expense("price", "0.01")
    total = ledger.sum_amount(EntryKind.EXPENSE)
    check("S2_ledger", "Exact sums", total == Decimal("0.10"), f"10 × $0.01 = ${total}")
    try:
        ledger.record_expense("chat", -1)
        fail("S2_ledger", "Negative amount rejected", "accepted")
    except LedgerValidationError:
        ok("S2_ledger", "Negative amount rejected")
    ledger.set_state(StateKey.STATUS, "running")
    check("S2_ledger", "agent_state", ledger.get_state(StateKey.STATUS) == "running")
except Exception as e:
    fail("S2_ledger", "FATAL", str(e)); traceback.print_exc()

# ================================================================
# SUBSYSTEM 3: METRICS
# ================================================================
section("SUBSYSTEM 3 · METRICS")
try:
    from core.metrics import MetricsAggregator
    metrics = MetricsAggregator(ledger)
    m = metrics.compute_metrics()
    check("S3_metrics", "profit = revenue - expenses",
          m.total_profit == m.total_revenue - m.total_expenses,
          f"${m.total_revenue} - ${m.total_expenses} = ${m.total_profit}")
    points = metrics.time_series(1)
    check("S3_metrics", "Time series", len(points) >= 1, f"{len(points)} bucket(s), last profit ${points[-1].profit if points else 0}")
except Exception as e:
    fail("S3_metrics", "FATAL", str(e)); traceback.print_exc()

# ================================================================
# SUBSYSTEM 4: EVENT BUS
# ================================================================
section("SUBSYSTEM 4 · EVENT BUS")
try:
    from core.event_bus import EventBus
    bus = EventBus(max_events=5)
    seen = []
    unsubscribe = bus.subscribe(seen.append)
    bus.subscribe(lambda e: 1 / 0)
    for i in range(8):
        bus.emit("tick", {"i": i})
    check("S4_bus", "Fan-out survives a broken listener", len(seen) == 8)
    check("S4_bus", "Ring buffer bounded", len(bus.recent(100)) == 5)
    unsubscribe()
    check("S4_bus", "Unsubscribe", bus.listener_count == 1)
except Exception as e:
    fail("S4_bus", "FATAL", str(e)); traceback.print_exc()

# ================================================================
# SUBSYSTEM 5: SCORING + INTELLIGENCE
# ================================================================
section("SUBSYSTEM 5 · SCORING + INTELLIGENCE")
try:
    from services.scoring import NO_ANOMALIES, compute_risk_score, detect_anomalies
    from services.intelligence import IntelligenceService
    check("S5_intel", "Risk score bounds", all(0 <= compute_risk_score(e, u, 2500) <= 100
                                               for e, u in [(0, 0), (1000, 0), (0, 1e7), (1, 1)]))
    check("S5_intel", "Clean wallet marker", detect_anomalies(1, 100, 2500) == [NO_ANOMALIES])

    skills = ScriptedSkills()
    service = IntelligenceService(skills, ledger, EventBus())
    report = run(service.synthesize(WALLET))
    check("S5_intel", "Full pipeline", report.skills_used == ["balance", "price", "fund", "chat"],
          f"risk={report.risk_score} category={report.wallet_category.value} cost=${report.cost_to_generate}")

    degraded = run(IntelligenceService(ScriptedSkills(failing={"chat", "price"}), ledger, EventBus())
                   .synthesize(WALLET))
    if degraded.ai_summary == "AI analysis unavailable":
        ok("S5_intel", "Degrades on skill failure", f"cost=${degraded.cost_to_generate}")
    else:
        fail("S5_intel", "Degrades on skill failure", degraded.ai_summary[:60])
except Exception as e:
    fail("S5_intel", "FATAL", str(e)); traceback.print_exc()

# ================================================================
# SUBSYSTEM 6: PROFIT ENGINE
# ================================================================
section("SUBSYSTEM 6 · PROFIT ENGINE  (single-flight reinvest)")
try:
    from core.profit_engine import ProfitEngine
    engine_ledger = LedgerStore(WORKDIR / "engine.db")
    engine_ledger.init_schema()
    engine_ledger.record_revenue("0.60", WALLET)
    skills = ScriptedSkills()
    engine = ProfitEngine(engine_ledger, MetricsAggregator(engine_ledger), skills, EventBus(),
                          wallet_address=AGENT, threshold=0.5, percentage=0.8)

    async def _double_tick():
        return await asyncio.gather(engine.check_and_reinvest(), engine.check_and_reinvest())

    outcomes = run(_double_tick())
    history = engine_ledger.reinvestment_history()
    check("S6_engine", "One reinvestment for two ticks",
          skills.calls.count("trade") == 1 and len(history) == 1,
          f"trades={skills.calls.count('trade')} rows={len(history)}")
    check("S6_engine", "Amount = 80% of $0.60", history and history[0].amount == Decimal("0.48"),
          f"${history[0].amount if history else '?'}")

    failing = ProfitEngine(engine_ledger, MetricsAggregator(engine_ledger), ScriptedSkills(failing={"trade"}),
                           EventBus(), wallet_address=AGENT, threshold=0.0, percentage=0.8)
    engine_ledger.record_revenue("1.00", WALLET)
    outcome = run(failing.check_and_reinvest())
    check("S6_engine", "Failed trade writes no row",
          outcome is not None and not outcome.success and len(engine_ledger.reinvestment_history()) == 1,
          outcome.error if outcome else "no attempt")
    engine_ledger.close()
except Exception as e:
    fail("S6_engine", "FATAL", str(e)); traceback.print_exc()

# ================================================================
# SUBSYSTEM 7: API + x402
# ================================================================
section("SUBSYSTEM 7 · API + x402 PAYWALL")
try:
    from fastapi.testclient import TestClient
    from api.paywall import PaymentGate
    from api.server import create_app
    from core.x402 import X402Signer, build_requirements, decode_payment_header, payer_of

    signer = X402Signer("0x" + "11" * 32, "base-sepolia")
    payment = decode_payment_header(signer.sign(build_requirements("0.01", AGENT, "base-sepolia", "selfcheck")))
    check("S7_api", "x402 sign + decode", payer_of(payment) == signer.address, signer.address)

    api_ledger = LedgerStore(WORKDIR / "api.db")
    api_ledger.init_schema()
    api_bus = EventBus()
    api_skills = ScriptedSkills()
    gate = PaymentGate(enabled=True, pay_to=AGENT, network="base-sepolia",
                       facilitator_url="http://127.0.0.1:9")
    app = create_app(api_ledger, MetricsAggregator(api_ledger),
                     IntelligenceService(api_skills, api_ledger, api_bus), api_skills, api_bus, gate,
                     intel_price=Decimal("0.08"), quick_check_price=Decimal("0.03"))
    client = TestClient(app)

    resp = client.get("/intel/not-an-address")
    check("S7_api", "Bad address → 400", resp.status_code == 400 and not api_ledger.recent_entries(1))
    resp = client.get(f"/intel/{WALLET}")
    check("S7_api", "Unpaid → 402", resp.status_code == 402 and not api_skills.calls,
          f"accepts {resp.json().get('accepts', [{}])[0].get('maxAmountRequired')} atomic USDC")

    gate.enabled = False
    resp = client.get(f"/intel/{WALLET}")
    meta = resp.json().get("meta", {})
    check("S7_api", "Demo mode report", resp.status_code == 200,
          f"price={meta.get('price')} cost={meta.get('cost')} profit={meta.get('profit')}")
    check("S7_api", "/api/metrics", client.get("/api/metrics").json().get("totalRequests") == 1)
    api_ledger.close()
except Exception as e:
    fail("S7_api", "FATAL", str(e)); traceback.print_exc()

if ledger is not None:
    ledger.close()

# ================================================================
# ENVIRONMENT
# ================================================================
section("ENVIRONMENT")
from core.config import load_env_files
load_env_files(Path(__file__).parent)
env_groups = {
    "CRITICAL — Agent identity": ["PINION_PRIVATE_KEY", "AGENT_WALLET_ADDRESS"],
    "IMPORTANT — Network": ["PINION_NETWORK", "SKILLS_BASE_URL"],
    "OPTIONAL — Economics": ["INTEL_PRICE", "QUICK_CHECK_PRICE", "REINVEST_THRESHOLD", "REINVEST_PERCENTAGE"],
    "OPTIONAL — Enrichment": ["INTEL_ENRICHMENT_URL"],
}
for cat, keys in env_groups.items():
    missing = [k for k in keys if not os.getenv(k)]
    if not missing:
        ok("env_check", cat, "all present")
    elif "CRITICAL" in cat:
        warn("env_check", cat, f"missing: {missing} (agent will not boot)")
    else:
        warn("env_check", cat, f"missing: {missing} (defaults apply)")
if os.getenv("PAYWALL_ENABLED", "true").lower() in ("0", "false", "no", "off"):
    warn("env_check", "PAYWALL_ENABLED", "off — every request is booked without payment")

# ================================================================
# FINAL SUMMARY
# ================================================================
section("FINAL SUMMARY")
total = len(RESULTS)
passed = sum(1 for r in RESULTS if r[2] == "PASS")
warned = sum(1 for r in RESULTS if r[2] == "WARN")
failed = sum(1 for r in RESULTS if r[2] == "FAIL")
elapsed = time.time() - START_TIME

print(f"\n  Total checks  : {total}")
print(f"  PASS          : {passed}")
print(f"  WARN          : {warned}")
print(f"  FAIL          : {failed}")
print(f"  Elapsed       : {elapsed:.1f}s")
score = 100 * passed // total if total else 0
print(f"\n  Health score  : {score}%  ({'HEALTHY' if score>=80 else 'DEGRADED' if score>=60 else 'CRITICAL'})")

if ERRORS:
    print("\n  CRITICAL FAILURES:")
    for s, n, d in ERRORS:
        print(f"    [{s}] {n}: {d}")
if WARNINGS:
    print("\n  WARNINGS:")
    for s, n, d in WARNINGS:
        print(f"    [{s}] {n}: {d}")

sys.exit(1 if ERRORS else 0)
