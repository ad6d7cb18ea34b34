"""Client modules for external service integrations."""

from voicepay.clients.chain_oracle import (
    BalanceOracle,
    FeeOracle,
    HttpChainOracle,
    OracleError,
    OracleTimeoutError,
    TransactionDraft
)

from voicepay.clients.config_store import (
    ConfigStoreError,
    JsonFileConfigStore
)

__all__ = [
    "BalanceOracle",
    "FeeOracle",
    "HttpChainOracle",
    "OracleError",
    "OracleTimeoutError",
    "TransactionDraft",
    "ConfigStoreError",
    "JsonFileConfigStore"
]
