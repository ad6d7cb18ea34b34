"""Pydantic models describing parsed voice commands."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class CommandType(str, Enum):
    """Top-level intent groups, in parser priority order."""

    PAYMENT = "payment"
    CONTACT = "contact"
    QUERY = "query"
    SETTINGS = "settings"
    UNKNOWN = "unknown"


class ParsedCommand(BaseModel):
    """Structured intent extracted from one utterance. Read-only once built."""

    model_config = ConfigDict(frozen=True)

    type: CommandType = Field(..., description="Intent group")
    action: str = Field(..., description="Action within the group, e.g. send, balance, add")
    amount: Optional[Decimal] = Field(None, description="Payment amount in token units")
    currency: Optional[str] = Field(None, description="Upper-case token symbol")
    recipient: Optional[str] = Field(None, description="Recipient as resolved (contact name or raw token)")
    recipient_address: Optional[str] = Field(None, description="Resolved on-chain address")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Parser confidence")
    timestamp: datetime = Field(..., description="When the utterance was parsed")
    parameters: Mapping[str, Any] = Field(default_factory=dict)
    suggestions: Tuple[str, ...] = Field(default_factory=tuple, max_length=3)

    @field_validator("parameters", mode="after")
    @classmethod
    def freeze_parameters(cls, v: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(v))

    @field_serializer("parameters")
    def serialize_parameters(self, v: Mapping[str, Any]) -> Dict[str, Any]:
        return dict(v)

    @property
    def is_payment(self) -> bool:
        return self.type == CommandType.PAYMENT

    @property
    def needs_clarification(self) -> bool:
        return bool(self.suggestions)
