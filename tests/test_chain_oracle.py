"""
Tests for the HTTP chain oracle.
"""

import json
from decimal import Decimal

import httpx
import pytest

from voicepay.clients.chain_oracle import HttpChainOracle, OracleError, OracleTimeoutError, TransactionDraft

ALICE = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
BOB = "5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty"


def oracle_with(handler) -> HttpChainOracle:
    return HttpChainOracle("https://oracle.test/v1/", timeout=1.0, transport=httpx.MockTransport(handler))


class TestHttpChainOracle:

    @pytest.mark.asyncio
    async def test_get_balance(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"balance": "12.5"})

        balance = await oracle_with(handler).get_balance(ALICE, "DOT")

        assert balance == Decimal("12.5")
        assert seen["url"] == f"https://oracle.test/v1/balances/{ALICE}?token=DOT"

    @pytest.mark.asyncio
    async def test_estimate_fee(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"fee": "0.0153"})

        draft = TransactionDraft(sender=ALICE, recipient=BOB, amount=Decimal("5"), token="DOT")
        fee = await oracle_with(handler).estimate_fee(draft)

        assert fee == Decimal("0.0153")
        assert seen["method"] == "POST"
        assert seen["path"] == "/v1/fees"
        assert seen["body"] == {"sender": ALICE, "recipient": BOB, "amount": "5", "token": "DOT"}

    @pytest.mark.asyncio
    async def test_http_error(self):
        oracle = oracle_with(lambda request: httpx.Response(503, json={"error": "down"}))

        with pytest.raises(OracleError, match="HTTP 503"):
            await oracle.get_balance(ALICE, "DOT")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(OracleTimeoutError, match="timed out"):
            await oracle_with(handler).get_balance(ALICE, "DOT")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(OracleError, match="Oracle request failed"):
            await oracle_with(handler).get_balance(ALICE, "DOT")

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        oracle = oracle_with(lambda request: httpx.Response(200, content=b"not json"))

        with pytest.raises(OracleError, match="Malformed oracle response"):
            await oracle.get_balance(ALICE, "DOT")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"balance": "abc"}, {"balance": "-1"}, {"balance": "NaN"}, []])
    async def test_invalid_balance_payload(self, payload):
        oracle = oracle_with(lambda request: httpx.Response(200, json=payload))

        with pytest.raises(OracleError):
            await oracle.get_balance(ALICE, "DOT")
