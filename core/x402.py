"""
x402 - HTTP 402 Payment Required, "exact" scheme on Base USDC

Both directions live here:
- Client side (we pay for skills): parse the 402 `accepts` list, sign an
  EIP-3009 TransferWithAuthorization with the agent key, resend with the
  base64 payload in X-PAYMENT.
- Server side (callers pay us): build the requirements we answer 402 with,
  and decode the X-PAYMENT header a caller sends back.

Protocol flow:
    GET /balance/0xabc
    → 402 {"x402Version": 1, "accepts": [{scheme, network, maxAmountRequired, payTo, asset, ...}]}
    → sign TransferWithAuthorization(from=agent, to=payTo, value=maxAmountRequired)
    → GET /balance/0xabc  with  X-PAYMENT: base64(json(payment payload))
    → 200 OK with data

Guard rails:
- Network in the requirement must be our network
- Amount must be <= max_payment_usd (no silent overspend on a repriced skill)
"""

import base64
import json
import logging
import os
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from eth_account import Account

from .constants import CHAIN_IDS, USDC_ADDRESSES

logger = logging.getLogger("autonome.x402")

X402_VERSION = 1
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
USDC_DECIMALS = 6

_TRANSFER_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


class PaymentError(Exception):
    """Payment requirements could not be met, signed or decoded."""
    pass


@dataclass
class PaymentRequirements:
    scheme: str
    network: str
    max_amount_required: int           # atomic USDC units (6 decimals)
    pay_to: str
    asset: str
    resource: str = ""
    description: str = ""
    max_timeout_seconds: int = 60
    extra: dict = field(default_factory=dict)

    @property
    def amount_usd(self) -> Decimal:
        return Decimal(self.max_amount_required) / (10 ** USDC_DECIMALS)

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRequirements":
        try:
            return cls(
                scheme=data["scheme"],
                network=data["network"],
                max_amount_required=int(data["maxAmountRequired"]),
                pay_to=data["payTo"],
                asset=data["asset"],
                resource=data.get("resource", ""),
                description=data.get("description", ""),
                max_timeout_seconds=int(data.get("maxTimeoutSeconds", 60)),
                extra=data.get("extra") or {},
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentError(f"Malformed payment requirements: {e}") from e

    def to_dict(self) -> dict:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": str(self.max_amount_required),
            "resource": self.resource,
            "description": self.description,
            "mimeType": "application/json",
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "extra": self.extra,
        }


def usd_to_atomic(amount_usd) -> int:
    return int(Decimal(str(amount_usd)) * (10 ** USDC_DECIMALS))


def build_requirements(price_usd, pay_to: str, network: str, resource: str,
                       description: str = "") -> PaymentRequirements:
    """Requirements we advertise in our own 402 responses."""
    return PaymentRequirements(
        scheme="exact",
        network=network,
        max_amount_required=usd_to_atomic(price_usd),
        pay_to=pay_to,
        asset=USDC_ADDRESSES[network],
        resource=resource,
        description=description,
        extra={"name": "USDC" if network == "base-sepolia" else "USD Coin", "version": "2"},
    )


def select_requirements(body: dict, network: str) -> PaymentRequirements:
    """Pick the first `exact` requirement on our network from a 402 body."""
    accepts = body.get("accepts") if isinstance(body, dict) else None
    if not accepts:
        raise PaymentError("402 response carried no payment requirements")
    for raw in accepts:
        req = PaymentRequirements.from_dict(raw)
        if req.scheme == "exact" and req.network == network:
            return req
    raise PaymentError(f"No 'exact' payment option on network {network}")


def encode_payment_header(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload, separators=(",", ":")).encode()).decode()


def decode_payment_header(header: str) -> dict:
    try:
        payload = json.loads(base64.b64decode(header, validate=True))
    except (ValueError, TypeError) as e:
        raise PaymentError(f"Undecodable {PAYMENT_HEADER} header: {e}") from e
    if not isinstance(payload, dict) or "payload" not in payload:
        raise PaymentError(f"{PAYMENT_HEADER} header is not an x402 payment payload")
    return payload


class X402Signer:
    """Signs exact-scheme USDC authorizations with the agent's key."""

    def __init__(self, private_key: str, network: str, max_payment_usd=Decimal("0.10")):
        self._account = Account.from_key(private_key)
        self.network = network
        self.max_payment_usd = Decimal(str(max_payment_usd))

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, req: PaymentRequirements) -> str:
        """Return the X-PAYMENT header value for `req`."""
        if req.network != self.network:
            raise PaymentError(f"Refusing payment on {req.network}, agent runs on {self.network}")
        if req.amount_usd > self.max_payment_usd:
            raise PaymentError(
                f"Refusing payment of ${req.amount_usd} (cap ${self.max_payment_usd}) to {req.pay_to}"
            )

        now = int(time.time())
        nonce = os.urandom(32)
        authorization = {
            "from": self._account.address,
            "to": req.pay_to,
            "value": req.max_amount_required,
            "validAfter": now - 60,
            "validBefore": now + req.max_timeout_seconds,
            "nonce": nonce,
        }
        typed = {
            "types": _TRANSFER_TYPES,
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": req.extra.get("name", "USD Coin"),
                "version": req.extra.get("version", "2"),
                "chainId": CHAIN_IDS[req.network],
                "verifyingContract": req.asset,
            },
            "message": authorization,
        }
        try:
            signed = Account.sign_typed_data(self._account.key, full_message=typed)
        except Exception as e:
            raise PaymentError(f"Signing failed: {e}") from e

        payload = {
            "x402Version": X402_VERSION,
            "scheme": req.scheme,
            "network": req.network,
            "payload": {
                "signature": "0x" + bytes(signed.signature).hex(),
                "authorization": {
                    **{k: str(v) for k, v in authorization.items() if k != "nonce"},
                    "nonce": "0x" + nonce.hex(),
                },
            },
        }
        logger.debug(f"x402: signed ${req.amount_usd} to {req.pay_to[:10]}... on {req.network}")
        return encode_payment_header(payload)


def payer_of(payment: dict) -> Optional[str]:
    """The `from` address inside a decoded payment payload, if present."""
    try:
        return payment["payload"]["authorization"]["from"]
    except (KeyError, TypeError):
        return None
