"""
Contact directory used to resolve spoken recipient names to addresses.
"""

import logging
import re
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from voicepay.models.internal_models import Contact
from voicepay.utils.text_utils import similarity

logger = logging.getLogger(__name__)

# SS58-style base58 address (Polkadot/Kusama/Westend)
ADDRESS_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{47,48}$")


def is_valid_address(address: Optional[str]) -> bool:
    """Syntactic check only; no checksum decoding."""
    return bool(address) and ADDRESS_PATTERN.match(address) is not None


class ContactDirectory:
    """
    Case-insensitive name → address lookup with exact and fuzzy queries.

    Mutated by the contact-management collaborator; the parser only reads it.
    """

    def __init__(self, contacts: Optional[Iterable[Contact]] = None):
        self._contacts: Dict[str, Contact] = {}
        self._lock = threading.Lock()
        for contact in contacts or ():
            self._contacts[contact.name] = contact

    @classmethod
    def coerce(
        cls,
        contacts: Union["ContactDirectory", Mapping[str, str], Iterable[Contact], None]
    ) -> "ContactDirectory":
        """Accept a directory, a name → address mapping, or Contact objects."""
        if isinstance(contacts, ContactDirectory):
            return contacts
        if contacts is None:
            return cls()
        if isinstance(contacts, Mapping):
            return cls(Contact(name=name, address=address) for name, address in contacts.items())
        return cls(contacts)

    def __len__(self) -> int:
        return len(self._contacts)

    def __contains__(self, name: str) -> bool:
        return name.strip().lower() in self._contacts

    def lookup(self, name: str) -> Optional[Contact]:
        """Exact, case-insensitive lookup."""
        return self._contacts.get(name.strip().lower())

    def find_fuzzy(self, name: str, threshold: float = 0.6) -> Optional[Tuple[Contact, float]]:
        """
        Best contact whose name similarity to ``name`` is strictly above ``threshold``.

        Ties keep the first contact in insertion order.
        """
        query = name.strip().lower()
        best: Optional[Tuple[Contact, float]] = None
        for contact in list(self._contacts.values()):
            score = similarity(query, contact.name)
            if score > threshold and (best is None or score > best[1]):
                best = (contact, score)
        return best

    def add(self, name: str, address: str, verified: bool = False) -> Contact:
        contact = Contact(name=name, address=address, verified=verified)
        with self._lock:
            self._contacts[contact.name] = contact
        logger.info(f"Added contact {contact.name}")
        return contact

    def remove(self, name: str) -> bool:
        with self._lock:
            removed = self._contacts.pop(name.strip().lower(), None)
        if removed is None:
            logger.warning(f"Contact {name} not found for removal")
            return False
        logger.info(f"Removed contact {removed.name}")
        return True

    def list_contacts(self) -> List[Contact]:
        return list(self._contacts.values())
