"""Identity resolution: raw channel identifiers to persistent contacts."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from .errors import IdentityConflictError, InvalidIdentifierError
from .models import Contact
from .store import ConversationStore

logger = logging.getLogger(__name__)

PHONE_CHANNELS = frozenset({"sms", "whatsapp", "voice"})
EMAIL_CHANNELS = frozenset({"email"})

_NON_DIGITS = re.compile(r"\D")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_identifier(channel: str, raw_identifier: str, default_country_code: str = "1") -> str:
    """Normalize a raw identifier into a namespaced key.

    Phone-based channels share the ``phone`` namespace so the same number
    on SMS and WhatsApp maps to one contact.

    Examples:
        >>> normalize_identifier("sms", "(555) 123-4567")
        'phone:+15551234567'
        >>> normalize_identifier("email", " Dana@Example.COM ")
        'email:dana@example.com'
        >>> normalize_identifier("webchat", "Visitor-42")
        'webchat:visitor-42'

    Raises:
        InvalidIdentifierError: If the identifier is empty or malformed.
    """
    channel = (channel or "").strip().lower()
    value = (raw_identifier or "").strip()
    if not channel:
        raise InvalidIdentifierError("channel is required")
    if not value:
        raise InvalidIdentifierError(f"empty identifier on channel {channel!r}")

    if channel in PHONE_CHANNELS:
        return f"phone:{_normalize_phone(value, default_country_code)}"

    if channel in EMAIL_CHANNELS or ("@" in value and _EMAIL.match(value)):
        address = value.lower()
        if not _EMAIL.match(address):
            raise InvalidIdentifierError(f"invalid email address {raw_identifier!r}")
        return f"email:{address}"

    return f"{channel}:{value.lower()}"


def _normalize_phone(value: str, default_country_code: str) -> str:
    has_plus = value.startswith("+")
    digits = _NON_DIGITS.sub("", value)
    if not has_plus and digits.startswith("00"):
        # International dialing prefix.
        has_plus, digits = True, digits[2:]
    if len(digits) < 7:
        raise InvalidIdentifierError(f"invalid phone number {value!r}")
    if has_plus:
        return f"+{digits}"
    if default_country_code == "1":
        if len(digits) == 10:
            return f"+1{digits}"
        if len(digits) == 11 and digits.startswith("1"):
            return f"+{digits}"
    elif not digits.startswith(default_country_code):
        return f"+{default_country_code}{digits.lstrip('0')}"
    return f"+{digits}"


@dataclass
class IdentityResolution:
    """Result of resolving a raw identifier."""

    contact: Contact
    identifier: str
    created: bool


class IdentityResolver:
    """Maps (organization, channel, raw identifier) to exactly one contact."""

    def __init__(self, store: ConversationStore, default_country_code: str = "1") -> None:
        self.store = store
        self.default_country_code = default_country_code

    def normalize(self, channel: str, raw_identifier: str, default_country_code: str | None = None) -> str:
        return normalize_identifier(
            channel,
            raw_identifier,
            default_country_code or self.default_country_code,
        )

    def lookup(self, organization: str, identifier: str) -> Contact | None:
        """Find the contact owning a normalized identifier.

        Raises:
            IdentityConflictError: If more than one contact owns it.
        """
        contact_ids = self.store.find_contact_ids(organization, identifier)
        if len(contact_ids) > 1:
            logger.error(
                "Identifier %s in %s is shared by %d contacts",
                identifier,
                organization,
                len(contact_ids),
            )
            raise IdentityConflictError(organization, identifier, contact_ids)
        if not contact_ids:
            return None
        return self.store.get_contact(contact_ids[0])

    def resolve(
        self,
        organization: str,
        channel: str,
        raw_identifier: str,
        now: datetime,
        default_country_code: str | None = None,
    ) -> IdentityResolution:
        """Return the contact for an identifier, creating it on first sight."""
        identifier = self.normalize(channel, raw_identifier, default_country_code)
        contact = self.lookup(organization, identifier)
        if contact is not None:
            return IdentityResolution(contact=contact, identifier=identifier, created=False)

        contact = self.store.create_contact(organization, identifier, channel.strip().lower(), now)
        logger.info("Created contact %s for %s", contact.id, identifier)
        return IdentityResolution(contact=contact, identifier=identifier, created=True)

    def link_identifier(
        self,
        contact_id: str,
        channel: str,
        raw_identifier: str,
        now: datetime,
    ) -> str:
        """Attach another identifier to an existing contact.

        Raises:
            IdentityConflictError: If a different contact already owns it.
        """
        contact = self.store.get_contact(contact_id)
        identifier = self.normalize(channel, raw_identifier)
        owners = [
            cid for cid in self.store.find_contact_ids(contact.organization, identifier)
            if cid != contact_id
        ]
        if owners:
            raise IdentityConflictError(contact.organization, identifier, [contact_id, *owners])
        self.store.add_identifier(contact.organization, contact_id, identifier, channel.strip().lower(), now)
        return identifier
