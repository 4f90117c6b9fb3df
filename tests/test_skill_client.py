"""
Skill client + x402 helpers. Signing uses a throwaway key.

Call-level tests mock `_request`; transport tests run the real client
against a local aiohttp skill server.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import test_utils, web

from core.skill_client import SkillClient, SkillError, SkillResult
from core.x402 import (
    PaymentError,
    X402Signer,
    build_requirements,
    decode_payment_header,
    encode_payment_header,
    payer_of,
    select_requirements,
    usd_to_atomic,
)

TEST_KEY = "0x" + "11" * 32
PAY_TO = "0x" + "22" * 20


# --- SkillResult ---


def test_value_or_on_success():
    result = SkillResult.success("balance", {"balances": {"ETH": "1"}}, Decimal("0.01"))
    assert result.value_or({}, key="balances") == {"ETH": "1"}
    assert result.value_or("x") == {"balances": {"ETH": "1"}}


def test_value_or_falls_back_on_failure_missing_or_empty():
    failed = SkillResult.failure("price", "timeout")
    assert failed.value_or(0.0) == 0.0
    assert failed.cost == Decimal(0)

    ok = SkillResult.success("chat", {"response": ""}, Decimal("0.01"))
    assert ok.value_or("fallback", key="response") == "fallback"
    assert ok.value_or("fallback", key="missing") == "fallback"

    not_a_dict = SkillResult.success("chat", "plain text", Decimal("0.01"))
    assert not_a_dict.value_or("fallback", key="response") == "fallback"


# --- SkillClient ---


@pytest.mark.asyncio
async def test_call_success_carries_fixed_cost():
    client = SkillClient("https://skills.test/api/v1/")
    with patch.object(client, "_request", new=AsyncMock(return_value={"usd": 2500})) as req:
        result = await client.price("ETH")

    req.assert_awaited_once_with("price", "GET", "https://skills.test/api/v1/price/ETH", None)
    assert result.ok
    assert result.cost == Decimal("0.01")
    assert client.calls_made == 1
    assert client.calls_failed == 0


@pytest.mark.asyncio
async def test_call_failure_never_raises():
    client = SkillClient("https://skills.test/api/v1")
    with patch.object(client, "_request", new=AsyncMock(side_effect=SkillError("trade", "HTTP 500: boom"))):
        result = await client.trade("USDC", "ETH", "0.48")

    assert not result.ok
    assert result.error == "HTTP 500: boom"
    assert result.cost == Decimal(0)
    assert client.calls_failed == 1


@pytest.mark.asyncio
async def test_post_skills_send_json_payloads():
    client = SkillClient("https://skills.test")
    with patch.object(client, "_request", new=AsyncMock(return_value={})) as req:
        await client.chat("hello")
        await client.trade("USDC", "ETH", "0.48")
        await client.broadcast({"data": "0x"})

    payloads = [c.args[3] for c in req.await_args_list]
    assert payloads == [
        {"message": "hello"},
        {"src": "USDC", "dst": "ETH", "amount": "0.48"},
        {"tx": {"data": "0x"}},
    ]


@pytest.mark.asyncio
async def test_pay_service_uses_absolute_url():
    client = SkillClient("https://skills.test")
    with patch.object(client, "_request", new=AsyncMock(return_value={"ok": True})) as req:
        result = await client.pay_service("https://other.example/x402/data")

    assert req.await_args.args[2] == "https://other.example/x402/data"
    assert result.skill == "payX402Service"


def test_status_without_signer():
    status = SkillClient("https://skills.test").get_status()
    assert status["payer"] is None
    assert status["calls_made"] == 0


# --- SkillClient over HTTP ---


@asynccontextmanager
async def skill_server(handler, path="/balance/{address}", method="GET"):
    """A local skill server with one route; yields its base URL."""
    app = web.Application()
    app.router.add_route(method, path, handler)
    async with test_utils.TestServer(app) as server:
        yield str(server.make_url("")).rstrip("/")


def _accepts(network="base-sepolia", price="0.01"):
    return {"x402Version": 1, "accepts": [build_requirements(price, PAY_TO, network, resource="r").to_dict()]}


@asynccontextmanager
async def skill_client(base_url, signer=True, timeout_seconds=5.0):
    client = SkillClient(base_url, signer=X402Signer(TEST_KEY, "base-sepolia") if signer else None,
                         timeout_seconds=timeout_seconds)
    try:
        yield client
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_402_is_signed_and_resent():
    seen = []

    async def handler(request):
        header = request.headers.get("X-PAYMENT")
        seen.append(header)
        if header is None:
            return web.json_response(_accepts(), status=402)
        return web.json_response({"balances": {"ETH": "1.5", "USDC": "250.00"}})

    async with skill_server(handler) as base, skill_client(base) as client:
        result = await client.balance("0xabc")
        payer = client.get_status()["payer"]

    assert result.ok
    assert result.data["balances"]["ETH"] == "1.5"
    assert result.cost == Decimal("0.01")
    assert seen[0] is None
    payment = decode_payment_header(seen[1])
    assert payer_of(payment) == payer
    assert payment["payload"]["authorization"]["value"] == "10000"


@pytest.mark.asyncio
async def test_free_endpoint_needs_no_payment():
    async def handler(request):
        return web.json_response({"usd": 2500.0})

    async with skill_server(handler, path="/price/{token}") as base, skill_client(base, signer=False) as client:
        result = await client.price("ETH")

    assert result.ok
    assert result.data == {"usd": 2500.0}


@pytest.mark.asyncio
async def test_second_402_means_payment_rejected():
    async def handler(request):
        return web.json_response(_accepts(), status=402)

    async with skill_server(handler) as base, skill_client(base) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert "rejected" in result.error
    assert client.calls_failed == 1


@pytest.mark.asyncio
async def test_402_without_signer_fails():
    async def handler(request):
        return web.json_response(_accepts(), status=402)

    async with skill_server(handler) as base, skill_client(base, signer=False) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert "no signer" in result.error


@pytest.mark.asyncio
async def test_402_with_html_body_fails_cleanly():
    async def handler(request):
        return web.Response(text="<html>Payment Required</html>", status=402, content_type="text/html")

    async with skill_server(handler) as base, skill_client(base) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert "402" in result.error


@pytest.mark.asyncio
async def test_402_for_another_network_fails():
    async def handler(request):
        return web.json_response(_accepts(network="base"), status=402)

    async with skill_server(handler) as base, skill_client(base) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert "base-sepolia" in result.error


@pytest.mark.asyncio
async def test_402_over_spend_cap_fails():
    async def handler(request):
        return web.json_response(_accepts(price="5.00"), status=402)

    async with skill_server(handler) as base, skill_client(base) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert "cap" in result.error


@pytest.mark.asyncio
async def test_http_error_status_fails():
    async def handler(request):
        return web.Response(text="upstream exploded", status=500)

    async with skill_server(handler) as base, skill_client(base) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert result.error.startswith("HTTP 500")
    assert "upstream exploded" in result.error


@pytest.mark.asyncio
async def test_non_json_success_body_fails():
    async def handler(request):
        return web.Response(text="not json", status=200)

    async with skill_server(handler) as base, skill_client(base) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert "invalid JSON" in result.error


@pytest.mark.asyncio
async def test_slow_skill_times_out():
    async def handler(request):
        await asyncio.sleep(0.5)
        return web.json_response({"balances": {}})

    async with skill_server(handler) as base, skill_client(base, timeout_seconds=0.05) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert result.error == "timed out"


@pytest.mark.asyncio
async def test_unreachable_server_fails():
    async def handler(request):
        return web.json_response({})

    async with skill_server(handler) as base:
        pass  # server is gone once the block exits

    async with skill_client(base) as client:
        result = await client.balance("0xabc")

    assert not result.ok
    assert "transport error" in result.error


@pytest.mark.asyncio
async def test_post_skill_body_reaches_server():
    received = []

    async def handler(request):
        received.append(await request.json())
        return web.json_response({"response": "ok"})

    async with skill_server(handler, path="/chat", method="POST") as base, skill_client(base) as client:
        result = await client.chat("hello")

    assert result.ok
    assert received == [{"message": "hello"}]


# --- x402 ---


def test_build_requirements_in_atomic_usdc():
    req = build_requirements(Decimal("0.08"), PAY_TO, "base-sepolia", resource="http://x/intel")
    assert req.max_amount_required == 80_000
    assert req.amount_usd == Decimal("0.08")
    d = req.to_dict()
    assert d["maxAmountRequired"] == "80000"
    assert d["scheme"] == "exact"
    assert d["payTo"] == PAY_TO
    assert usd_to_atomic("0.01") == 10_000


def test_select_requirements_picks_our_network():
    body = {"accepts": [
        build_requirements("0.01", PAY_TO, "base", resource="r").to_dict(),
        build_requirements("0.01", PAY_TO, "base-sepolia", resource="r").to_dict(),
    ]}
    assert select_requirements(body, "base-sepolia").network == "base-sepolia"

    with pytest.raises(PaymentError):
        select_requirements({"accepts": []}, "base")
    with pytest.raises(PaymentError):
        select_requirements({"accepts": [{"scheme": "exact"}]}, "base")


def test_header_codec_rejects_garbage():
    with pytest.raises(PaymentError):
        decode_payment_header("%%% not base64 %%%")
    with pytest.raises(PaymentError):
        decode_payment_header(encode_payment_header({"no": "payload"}))


def test_signer_produces_decodable_payment():
    signer = X402Signer(TEST_KEY, "base-sepolia")
    req = build_requirements("0.01", PAY_TO, "base-sepolia", resource="r")

    payment = decode_payment_header(signer.sign(req))

    assert payment["scheme"] == "exact"
    assert payment["network"] == "base-sepolia"
    auth = payment["payload"]["authorization"]
    assert auth["to"] == PAY_TO
    assert auth["value"] == "10000"
    assert payer_of(payment) == signer.address
    assert payment["payload"]["signature"].startswith("0x")
    assert len(auth["nonce"]) == 66


def test_signer_refuses_wrong_network():
    signer = X402Signer(TEST_KEY, "base-sepolia")
    with pytest.raises(PaymentError):
        signer.sign(build_requirements("0.01", PAY_TO, "base", resource="r"))


def test_signer_refuses_over_cap():
    signer = X402Signer(TEST_KEY, "base-sepolia", max_payment_usd="0.05")
    with pytest.raises(PaymentError):
        signer.sign(build_requirements("0.06", PAY_TO, "base-sepolia", resource="r"))


def test_payer_of_missing():
    assert payer_of({}) is None
