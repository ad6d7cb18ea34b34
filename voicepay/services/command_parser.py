"""
Command parser turning transcribed speech into structured payment intents.

The parser walks an explicit, ordered table of pattern rules. Groups are tried
in priority order (payment, contact, query, settings) and, within a group, in
listed order; the first structural match wins regardless of the confidence it
would produce. Ambiguity is never raised: it shows up as a low confidence and
a short list of example phrasings the user can say instead.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Pattern, Tuple, Union

from voicepay.config import ParserTuning
from voicepay.models.command_models import CommandType, ParsedCommand
from voicepay.models.internal_models import Contact
from voicepay.services.contact_directory import ContactDirectory, is_valid_address
from voicepay.utils.text_utils import normalize_text, tokenize

logger = logging.getLogger(__name__)

ContactsInput = Union[ContactDirectory, Mapping[str, str], Iterable[Contact], None]
Extractor = Callable[[re.Match], Dict[str, Optional[str]]]

_NUMBER = r"(\d+(?:\.\d+)?)"
_RECIPIENT = r"([a-z0-9]+)"
_NUMERIC_TOKEN = re.compile(r"^\d+(?:\.\d+)?$")


def _is_number(token: Optional[str]) -> bool:
    # Decimal() alone would accept "nan" and "inf"
    return token is not None and _NUMERIC_TOKEN.match(token) is not None


def _payment_fields(match: re.Match) -> Dict[str, Optional[str]]:
    """
    Pull amount, currency and recipient out of a payment match.

    Rules capture either "amount currency recipient" or "recipient amount
    currency". When the first capture is not numeric the order is swapped.
    """
    groups = list(match.groups()) + [None, None, None]
    first, second, third = groups[0], groups[1], groups[2]
    if first is not None and not _is_number(first):
        return {"recipient": first, "amount": second, "currency": third}
    return {"amount": first, "currency": second, "recipient": third or first}


def _contact_fields(match: re.Match) -> Dict[str, Optional[str]]:
    groups = list(match.groups()) + [None, None]
    return {"contact_name": groups[0], "contact_address": groups[1]}


def _feature_fields(match: re.Match) -> Dict[str, Optional[str]]:
    feature = match.group(1) if match.groups() else None
    return {"feature": normalize_text(feature).lower() if feature else "unknown"}


def _no_fields(match: re.Match) -> Dict[str, Optional[str]]:
    return {}


@dataclass(frozen=True)
class PatternRule:
    """One (matcher, extractor) pair in the dispatch table."""

    name: str
    type: CommandType
    action: str
    pattern: Pattern
    extractor: Extractor = _no_fields

    def match(self, text: str) -> Optional[re.Match]:
        return self.pattern.search(text)


def _rule(name: str, type_: CommandType, action: str, regex: str, extractor: Extractor = _no_fields) -> PatternRule:
    return PatternRule(name, type_, action, re.compile(regex, re.IGNORECASE), extractor)


# Order is significant: first successful match wins.
DEFAULT_RULES: Tuple[PatternRule, ...] = (
    # payment
    _rule(
        "payment.amount_first",
        CommandType.PAYMENT, "send",
        rf"\b(?:send|pay|transfer)\s+{_NUMBER}(?:\s*(?!to\b)([a-z]{{2,10}})\b)?\s+to\s+{_RECIPIENT}",
        _payment_fields,
    ),
    _rule(
        "payment.recipient_first",
        CommandType.PAYMENT, "send",
        rf"\b(?:give|send)\s+{_RECIPIENT}\s+{_NUMBER}(?:\s*([a-z]{{2,10}})\b)?",
        _payment_fields,
    ),
    _rule(
        "payment.worth_of",
        CommandType.PAYMENT, "send",
        rf"\b(?:transfer|pay)\s+{_NUMBER}\s+(?:dollars?\s+worth\s+of\s+)?(?:(?!to\b)([a-z]{{2,10}})\s+)?to\s+{_RECIPIENT}",
        _payment_fields,
    ),
    # contact management
    _rule(
        "contact.add",
        CommandType.CONTACT, "add",
        r"\b(?:add|create)\s+contact\s+([a-z0-9]+)(?:\s+with\s+address\s+([a-z0-9]+))?",
        _contact_fields,
    ),
    _rule(
        "contact.remove",
        CommandType.CONTACT, "remove",
        r"\b(?:remove|delete)\s+contact\s+([a-z0-9]+)",
        _contact_fields,
    ),
    _rule(
        "contact.list",
        CommandType.CONTACT, "list",
        r"\b(?:show|list|display)\s+(?:my\s+)?contacts\b",
    ),
    # queries
    _rule(
        "query.balance",
        CommandType.QUERY, "balance",
        r"\b(?:what|show|check|display)(?:'s|\s+is)?\s+my\s+balance\b",
    ),
    _rule(
        "query.history",
        CommandType.QUERY, "history",
        r"\b(?:show|display|list)\s+(?:my\s+)?(?:transaction\s+)?history\b",
    ),
    _rule(
        "query.status",
        CommandType.QUERY, "status",
        r"\b(?:check|show|what)(?:'s|\s+is)?\s+(?:the\s+)?(?:network\s+)?status\b",
    ),
    _rule(
        "query.funds",
        CommandType.QUERY, "balance",
        r"\b(?:how\s+much|what)\s+(?:money|funds|balance)\s+(?:do\s+i\s+have|have\s+i)\b",
    ),
    # settings
    _rule(
        "settings.open",
        CommandType.SETTINGS, "open",
        r"\b(?:open|show|go\s+to)\s+settings\b",
    ),
    _rule(
        "settings.update",
        CommandType.SETTINGS, "update",
        r"\b(?:change|update|modify)\s+(?:my\s+)?(?:security|preferences)\b",
    ),
    _rule(
        "settings.enable",
        CommandType.SETTINGS, "enable",
        r"\b(?:enable|turn\s+on)\s+(biometrics?|voice\s+verification)\b",
        _feature_fields,
    ),
    _rule(
        "settings.disable",
        CommandType.SETTINGS, "disable",
        r"\b(?:disable|turn\s+off)\s+(biometrics?|voice\s+verification)\b",
        _feature_fields,
    ),
)


@dataclass(frozen=True)
class SuggestionSet:
    """Example phrasings offered when an utterance overlaps ``keywords``."""

    category: str
    keywords: FrozenSet[str]
    examples: Tuple[str, ...]
    match_digits: bool = False

    def matches(self, tokens: List[str]) -> bool:
        if self.keywords.intersection(tokens):
            return True
        return self.match_digits and any(token.isdigit() for token in tokens)


SUGGESTION_SETS: Tuple[SuggestionSet, ...] = (
    SuggestionSet(
        "payment",
        frozenset({"send", "pay", "transfer", "give"}),
        ("Send 5 DOT to Alice", "Pay 10 WND to Bob", "Transfer 2.5 DOT to Charlie"),
        match_digits=True,
    ),
    SuggestionSet(
        "query",
        frozenset({"balance", "check", "show", "what", "history", "status"}),
        ("What's my balance?", "Show transaction history", "Check network status"),
    ),
    SuggestionSet(
        "contact",
        frozenset({"contact", "contacts", "add", "list", "remove"}),
        ("Add contact Alice", "Show my contacts", "Remove contact Bob"),
    ),
)

GENERIC_SUGGESTIONS: Tuple[str, ...] = (
    "Send 5 DOT to Alice",
    "What's my balance?",
    "Show my contacts",
    "Open settings",
)


class CommandParser:
    """
    Classifies utterances into ParsedCommand values.

    ``parse`` depends only on its arguments: the contact directory is passed
    in and the timestamp is taken from the injected clock only when the
    caller does not supply one.
    """

    def __init__(
        self,
        tuning: Optional[ParserTuning] = None,
        rules: Optional[Iterable[PatternRule]] = None,
        clock: Callable[[], float] = time.time
    ):
        self.tuning = tuning or ParserTuning()
        self.rules: Tuple[PatternRule, ...] = tuple(rules) if rules is not None else DEFAULT_RULES
        self._clock = clock
        self._base_confidence = {
            CommandType.PAYMENT: self.tuning.payment_confidence,
            CommandType.CONTACT: self.tuning.contact_confidence,
            CommandType.QUERY: self.tuning.query_confidence,
            CommandType.SETTINGS: self.tuning.settings_confidence,
        }

    def parse(
        self,
        text: str,
        contacts: ContactsInput = None,
        timestamp: Optional[datetime] = None
    ) -> ParsedCommand:
        """
        Parse one utterance.

        Args:
            text: Transcribed speech
            contacts: Directory (or name → address mapping) used for recipients
            timestamp: Parse time; defaults to the injected clock

        Returns:
            ParsedCommand with confidence in [0, 1] and, below the suggestion
            threshold, up to three example phrasings
        """
        if timestamp is None:
            timestamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc)

        normalized = normalize_text(text)
        if not normalized:
            logger.debug("Empty command text")
            return self._finalize(
                normalized,
                type_=CommandType.UNKNOWN,
                action="unknown",
                confidence=0.0,
                timestamp=timestamp,
                parameters={"command_text": ""},
            )

        directory = ContactDirectory.coerce(contacts)
        logger.debug(f"Parsing command: {normalized.lower()}")

        for rule in self.rules:
            match = rule.match(normalized)
            if match is None:
                continue
            fields = rule.extractor(match)
            if rule.type == CommandType.PAYMENT:
                return self._build_payment(rule, fields, normalized, directory, timestamp)
            return self._build_simple(rule, fields, normalized, timestamp)

        return self._finalize(
            normalized,
            type_=CommandType.UNKNOWN,
            action="unknown",
            confidence=self.tuning.unknown_confidence,
            timestamp=timestamp,
            parameters={"command_text": normalized.lower()},
        )

    def _build_payment(
        self,
        rule: PatternRule,
        fields: Dict[str, Optional[str]],
        normalized: str,
        directory: ContactDirectory,
        timestamp: datetime
    ) -> ParsedCommand:
        tuning = self.tuning
        confidence = self._base_confidence[CommandType.PAYMENT]
        parameters: Dict[str, Any] = {
            "command_text": normalized.lower(),
            "matched_rule": rule.name,
        }

        amount: Optional[Decimal] = None
        if _is_number(fields.get("amount")):
            amount = Decimal(fields["amount"])
        if amount is None or amount <= 0:
            confidence *= tuning.missing_amount_factor

        currency_token = fields.get("currency")
        if currency_token is None:
            currency = tuning.default_currency
        elif currency_token.upper() in tuning.currencies:
            currency = currency_token.upper()
        else:
            currency = tuning.default_currency
            confidence *= tuning.unknown_currency_factor
            parameters["unrecognized_currency"] = currency_token.upper()

        recipient, address, resolution, factor = self._resolve_recipient(fields.get("recipient"), directory)
        confidence *= factor
        parameters["recipient_resolution"] = resolution

        return self._finalize(
            normalized,
            type_=CommandType.PAYMENT,
            action=rule.action,
            confidence=confidence,
            timestamp=timestamp,
            parameters=parameters,
            amount=amount,
            currency=currency,
            recipient=recipient,
            recipient_address=address,
        )

    def _resolve_recipient(
        self,
        token: Optional[str],
        directory: ContactDirectory
    ) -> Tuple[Optional[str], Optional[str], str, float]:
        """Returns (recipient, address, resolution, confidence factor)."""
        tuning = self.tuning
        if not token:
            return None, None, "unresolved", tuning.unresolved_recipient_factor

        contact = directory.lookup(token)
        if contact is not None:
            return contact.name, contact.address, "contact", tuning.exact_contact_factor

        if is_valid_address(token):
            return token, token, "address", tuning.raw_address_factor

        fuzzy = directory.find_fuzzy(token, threshold=tuning.fuzzy_match_threshold)
        if fuzzy is not None:
            contact, score = fuzzy
            logger.debug(f"Fuzzy matched recipient '{token}' to contact '{contact.name}' ({score:.2f})")
            return contact.name, contact.address, "fuzzy", tuning.fuzzy_contact_factor

        return token.lower(), None, "unresolved", tuning.unresolved_recipient_factor

    def _build_simple(
        self,
        rule: PatternRule,
        fields: Dict[str, Optional[str]],
        normalized: str,
        timestamp: datetime
    ) -> ParsedCommand:
        parameters: Dict[str, Any] = {"matched_rule": rule.name}
        recipient = None
        address = None

        if rule.type == CommandType.CONTACT:
            if fields.get("contact_name"):
                recipient = fields["contact_name"].lower()
                parameters["contact_name"] = recipient
            if fields.get("contact_address"):
                address = fields["contact_address"]
                parameters["contact_address"] = address
        elif rule.type == CommandType.QUERY:
            parameters["query_type"] = rule.action
        elif "feature" in fields:
            parameters["feature"] = fields["feature"]

        return self._finalize(
            normalized,
            type_=rule.type,
            action=rule.action,
            confidence=self._base_confidence[rule.type],
            timestamp=timestamp,
            parameters=parameters,
            recipient=recipient,
            recipient_address=address,
        )

    def _finalize(
        self,
        normalized: str,
        type_: CommandType,
        action: str,
        confidence: float,
        timestamp: datetime,
        parameters: Dict[str, Any],
        **fields: Any
    ) -> ParsedCommand:
        confidence = round(min(max(confidence, 0.0), 1.0), 4)
        suggestions: List[str] = []
        if confidence < self.tuning.suggestion_threshold:
            suggestions = self.generate_suggestions(normalized)

        return ParsedCommand(
            type=type_,
            action=action,
            confidence=confidence,
            timestamp=timestamp,
            parameters=parameters,
            suggestions=suggestions,
            **fields
        )

    def generate_suggestions(self, text: str) -> List[str]:
        """Example phrasings whose category overlaps the words in ``text``."""
        tokens = tokenize(text)
        suggestions: List[str] = []
        for suggestion_set in SUGGESTION_SETS:
            if suggestion_set.matches(tokens):
                suggestions.extend(suggestion_set.examples)

        if not suggestions:
            suggestions = list(GENERIC_SUGGESTIONS)

        return suggestions[:self.tuning.max_suggestions]

    def clarification_prompt(self, text: str) -> str:
        """Sentence asking the user to rephrase, with concrete examples."""
        examples = ", ".join(f'"{example}"' for example in self.generate_suggestions(normalize_text(text)))
        return f"I didn't understand that command. Try: {examples}"

    @staticmethod
    def summarize(command: ParsedCommand) -> str:
        """Short human-readable description used in confirmation prompts."""
        if command.type == CommandType.PAYMENT:
            return f"Send {command.amount} {command.currency} to {command.recipient}"
        if command.type == CommandType.CONTACT:
            if command.action == "list":
                return "List contacts"
            return f"{command.action.capitalize()} contact {command.recipient or ''}".strip()
        if command.type == CommandType.QUERY:
            return f"Show {command.action}"
        if command.type == CommandType.SETTINGS:
            feature = command.parameters.get("feature")
            if feature:
                return f"{command.action.capitalize()} {feature}"
            return f"{command.action.capitalize()} settings"
        return "Unknown command"
