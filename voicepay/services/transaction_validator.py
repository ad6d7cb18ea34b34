"""
Terminal balance and fee checks before a transfer is handed off for signing.
"""

import asyncio
import logging
from decimal import Decimal
from typing import List, Optional

from voicepay.clients.chain_oracle import BalanceOracle, FeeOracle, TransactionDraft
from voicepay.config import FeePolicy, SecurityConfig
from voicepay.models.command_models import ParsedCommand
from voicepay.models.security_models import SecurityErrorCode, ValidationResult
from voicepay.services.contact_directory import is_valid_address

logger = logging.getLogger(__name__)


def _fail(code: SecurityErrorCode, message: str, warnings: Optional[List[SecurityErrorCode]] = None) -> ValidationResult:
    return ValidationResult(ok=False, error_code=code, error=message, warnings=warnings or [])


class TransactionValidator:
    """Checks a payment command against the sender's balance and the network fee."""

    def __init__(self, config: Optional[SecurityConfig] = None, default_currency: str = "DOT"):
        self.config = config or SecurityConfig()
        self.default_currency = default_currency

    def validate(
        self,
        command: ParsedCommand,
        balance: Optional[Decimal],
        fee_estimate: Optional[Decimal] = None
    ) -> ValidationResult:
        """
        Validate a payment.

        Checks, in order: positive amount, syntactically valid recipient
        address, known balance, balance covers the amount, balance covers
        amount plus fee. An unknown balance fails closed. A missing fee
        estimate is denied or passed with a warning according to
        ``fee_estimation_policy``.
        """
        amount = command.amount
        if amount is None or amount <= 0:
            return _fail(SecurityErrorCode.INVALID_AMOUNT, "Amount must be greater than zero")

        if not is_valid_address(command.recipient_address):
            return _fail(SecurityErrorCode.INVALID_RECIPIENT, "Recipient address is not a valid address")

        if balance is None:
            return _fail(SecurityErrorCode.BALANCE_UNAVAILABLE, "Balance could not be determined")

        if balance < amount:
            return _fail(
                SecurityErrorCode.INSUFFICIENT_BALANCE,
                f"Insufficient balance. Available: {balance}, Required: {amount}"
            )

        if fee_estimate is None:
            if self.config.fee_estimation_policy == FeePolicy.DENY:
                return _fail(SecurityErrorCode.FEE_ESTIMATION_UNAVAILABLE, "Cannot estimate network fee")
            logger.warning("Fee estimate unavailable; allowing transfer with warning")
            return ValidationResult(ok=True, warnings=[SecurityErrorCode.FEE_ESTIMATION_UNAVAILABLE])

        total = amount + fee_estimate
        if balance < total:
            return _fail(
                SecurityErrorCode.INSUFFICIENT_BALANCE,
                f"Insufficient balance for transaction and fees. Required: {total}, Available: {balance}"
            )

        return ValidationResult(ok=True, fee=fee_estimate)

    async def validate_with_oracles(
        self,
        command: ParsedCommand,
        account: str,
        balance_oracle: BalanceOracle,
        fee_oracle: Optional[FeeOracle] = None,
        timeout: float = 5.0
    ) -> ValidationResult:
        """
        Fetch balance and fee under a deadline, then run ``validate``.

        A balance lookup that fails or times out yields BALANCE_UNAVAILABLE.
        A fee lookup that fails or times out is treated as "no estimate".
        """
        token = command.currency or self.default_currency

        balance: Optional[Decimal] = None
        try:
            balance = await asyncio.wait_for(balance_oracle.get_balance(account, token), timeout)
        except asyncio.TimeoutError:
            logger.error(f"Balance lookup for {account[:8]}... timed out after {timeout}s")
        except Exception as e:
            logger.error(f"Balance lookup for {account[:8]}... failed: {e}")

        fee: Optional[Decimal] = None
        can_estimate = (
            fee_oracle is not None
            and balance is not None
            and command.amount is not None
            and command.amount > 0
            and is_valid_address(command.recipient_address)
        )
        if can_estimate:
            draft = TransactionDraft(
                sender=account,
                recipient=command.recipient_address,
                amount=command.amount,
                token=token
            )
            try:
                fee = await asyncio.wait_for(fee_oracle.estimate_fee(draft), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Fee estimation timed out after {timeout}s")
            except Exception as e:
                logger.warning(f"Fee estimation failed: {e}")

        return self.validate(command, balance, fee)
