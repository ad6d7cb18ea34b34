"""
Balance and fee oracles for the chain a payment settles on.

The validator only depends on the two protocols below. ``HttpChainOracle``
implements both against a small JSON gateway:

- ``GET  {base}/balances/{address}?token=DOT`` -> ``{"balance": "12.5"}``
- ``POST {base}/fees`` with a transaction draft -> ``{"fee": "0.0153"}``

Amounts travel as decimal strings to avoid float rounding.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class OracleError(Exception):
    """Raised when a balance or fee lookup fails."""
    pass


class OracleTimeoutError(OracleError):
    """Raised when a balance or fee lookup times out."""
    pass


@dataclass(frozen=True)
class TransactionDraft:
    """Unsigned transfer description used for fee estimation."""

    sender: str
    recipient: str
    amount: Decimal
    token: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "token": self.token,
        }


class BalanceOracle(Protocol):
    async def get_balance(self, address: str, token: str) -> Decimal:
        ...


class FeeOracle(Protocol):
    async def estimate_fee(self, draft: TransactionDraft) -> Decimal:
        ...


def _decimal_field(payload: Any, field: str) -> Decimal:
    if not isinstance(payload, dict) or field not in payload:
        raise OracleError(f"Oracle response missing '{field}'")
    try:
        value = Decimal(str(payload[field]))
    except InvalidOperation:
        raise OracleError(f"Oracle returned a non-numeric {field}: {payload[field]!r}")
    if not value.is_finite() or value < 0:
        raise OracleError(f"Oracle returned an invalid {field}: {value}")
    return value


class HttpChainOracle:
    """httpx-backed implementation of both BalanceOracle and FeeOracle."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the oracle client.

        Args:
            base_url: Gateway root, e.g. ``https://oracle.example.net/v1``
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()

        except httpx.TimeoutException as e:
            logger.error(f"Timeout calling oracle {method} {path}: {e}")
            raise OracleTimeoutError(f"Oracle request timed out: {e}")
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error calling oracle {method} {path}: {e}")
            raise OracleError(f"Oracle returned HTTP {e.response.status_code}")
        except ValueError as e:
            logger.error(f"Malformed oracle response for {method} {path}: {e}")
            raise OracleError(f"Malformed oracle response: {e}")
        except httpx.HTTPError as e:
            logger.error(f"Oracle request failed for {method} {path}: {e}")
            raise OracleError(f"Oracle request failed: {e}")

    async def get_balance(self, address: str, token: str) -> Decimal:
        """Free balance of ``address`` in ``token`` units."""
        payload = await self._request("GET", f"/balances/{address}", params={"token": token})
        balance = _decimal_field(payload, "balance")
        logger.debug(f"Balance for {address[:8]}...: {balance} {token}")
        return balance

    async def estimate_fee(self, draft: TransactionDraft) -> Decimal:
        """Estimated network fee for ``draft`` in the draft's token units."""
        payload = await self._request("POST", "/fees", json=draft.to_payload())
        return _decimal_field(payload, "fee")
