"""
Invoice number reservations.

Invoice numbers (QuickBooks DocNumber) are claimed with the same atomic
discipline as sync jobs: a reservation row holds a unique key while it is
active, so two concurrent requests can never receive the same number.
Reservations that are not used within their lifetime expire.
"""

import re
from datetime import timedelta
from typing import Iterable, Optional

from qbosync.config import Settings, get_settings
from qbosync.connectors.qbo_client import QBOClient
from qbosync.models.enums import ReservationStatus
from qbosync.models.reservations import InvoiceNumberReservation
from qbosync.storage.base import DuplicateKeyError, StorageBackend
from qbosync.sync.errors import ConflictError, NotConnectedError, SyncError
from qbosync.sync.token_refresher import TokenRefresher
from qbosync.utils.logging import get_logger
from qbosync.utils.timeutil import utcnow

logger = get_logger(__name__)

DEFAULT_FIRST_NUMBER = "1001"

_NUMERIC = re.compile(r"^(\d+)$")
_PREFIXED = re.compile(r"^([A-Za-z-]+)(\d+)$")
_YEAR_PREFIXED = re.compile(r"^(\d{4}-)(\d+)$")
_TRAILING_DIGITS = re.compile(r"(\d+)$")

_MAX_CLAIM_ATTEMPTS = 20


def increment_invoice_number(current: Optional[str]) -> str:
    """
    Next number after `current`, keeping its shape.

    Handles plain numbers ("1041" -> "1042"), prefix plus digits
    ("INV-0099" -> "INV-0100") and year prefixes ("2026-007" -> "2026-008").
    Anything else falls back to its digits plus one, or the default first
    number when it has none.
    """
    if not current:
        return DEFAULT_FIRST_NUMBER
    current = current.strip()

    match = _NUMERIC.match(current)
    if match:
        return str(int(match.group(1)) + 1)

    for pattern in (_PREFIXED, _YEAR_PREFIXED):
        match = pattern.match(current)
        if match:
            prefix, digits = match.groups()
            return f"{prefix}{str(int(digits) + 1).zfill(len(digits))}"

    digits = re.sub(r"\D", "", current)
    if digits:
        return str(int(digits) + 1)
    return DEFAULT_FIRST_NUMBER


def _sort_key(number: str) -> tuple[int, str]:
    match = _TRAILING_DIGITS.search(number)
    return (int(match.group(1)) if match else -1, number)


def highest_number(numbers: Iterable[Optional[str]]) -> Optional[str]:
    """The number with the largest trailing numeric part."""
    candidates = [n for n in numbers if n]
    if not candidates:
        return None
    return max(candidates, key=_sort_key)


class InvoiceNumberService:
    """
    Reserve, use and release invoice numbers per organization.

    Args:
        storage: Storage backend
        settings: Reservation lifetime
        refresher: When given with a client, the latest QuickBooks DocNumber
            is consulted as well as local invoices
        qbo_client: QuickBooks client
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings: Optional[Settings] = None,
        refresher: Optional[TokenRefresher] = None,
        qbo_client: Optional[QBOClient] = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.refresher = refresher
        self.qbo_client = qbo_client

    async def _remote_last_number(self, org_id: str) -> Optional[str]:
        if self.refresher is None or self.qbo_client is None:
            return None
        try:
            grant = await self.refresher.ensure_fresh_access_token(org_id)
            return await self.qbo_client.company(grant.realm_id, grant.access_token).get_last_invoice_number()
        except NotConnectedError:
            return None
        except SyncError as e:
            logger.warning(
                "invoice_number_remote_lookup_failed",
                org_id=org_id,
                failure_reason=e.reason.value,
            )
            return None

    def _taken(self, org_id: str) -> set[str]:
        return set(self.storage.list_invoice_numbers(org_id)) | set(
            self.storage.list_active_reserved_numbers(org_id)
        )

    def _claim(self, org_id: str, number: str) -> InvoiceNumberReservation:
        now = utcnow()
        reservation = InvoiceNumberReservation(
            org_id=org_id,
            reserved_number=number,
            reserved_at=now,
            expires_at=now + timedelta(minutes=self.settings.invoice_reservation_ttl_minutes),
        )
        return self.storage.create_reservation(reservation)

    async def reserve(self, org_id: str, number: Optional[str] = None) -> InvoiceNumberReservation:
        """
        Reserve a specific number, or the next free one.

        Raises:
            ConflictError: If the requested number is already taken
        """
        self.expire_stale()

        if number is not None:
            if number in set(self.storage.list_invoice_numbers(org_id)):
                raise ConflictError(f"Invoice number {number} is already in use")
            try:
                reservation = self._claim(org_id, number)
            except DuplicateKeyError as e:
                raise ConflictError(f"Invoice number {number} is already reserved") from e
            logger.info("invoice_number_reserved", org_id=org_id, number=number, requested=True)
            return reservation

        taken = self._taken(org_id)
        remote_last = await self._remote_last_number(org_id)
        candidate = increment_invoice_number(highest_number([*taken, remote_last]))

        for _ in range(_MAX_CLAIM_ATTEMPTS):
            if candidate not in taken:
                try:
                    reservation = self._claim(org_id, candidate)
                except DuplicateKeyError:
                    # Claimed concurrently; move on to the next number
                    taken.add(candidate)
                else:
                    logger.info("invoice_number_reserved", org_id=org_id, number=candidate, requested=False)
                    return reservation
            candidate = increment_invoice_number(candidate)

        raise ConflictError("Could not reserve an invoice number; too many concurrent reservations")

    def _get(self, org_id: str, reservation_id: str) -> InvoiceNumberReservation:
        reservation = self.storage.get_reservation(reservation_id)
        if reservation is None or reservation.org_id != org_id:
            raise KeyError(reservation_id)
        return reservation

    def mark_used(self, org_id: str, reservation_id: str, invoice_id: str) -> bool:
        """
        Bind a reservation to the invoice that used its number.

        Raises:
            KeyError: If the reservation does not exist in the organization
        """
        reservation = self._get(org_id, reservation_id)
        updated = self.storage.update_reservation_status(reservation_id, ReservationStatus.USED, invoice_id)
        logger.info(
            "invoice_number_used" if updated else "invoice_number_use_ignored",
            org_id=org_id,
            number=reservation.reserved_number,
            invoice_id=invoice_id,
        )
        return updated

    def release(self, org_id: str, reservation_id: str) -> bool:
        """
        Give a reserved number back.

        Raises:
            KeyError: If the reservation does not exist in the organization
        """
        reservation = self._get(org_id, reservation_id)
        updated = self.storage.update_reservation_status(reservation_id, ReservationStatus.RELEASED)
        if updated:
            logger.info("invoice_number_released", org_id=org_id, number=reservation.reserved_number)
        return updated

    def expire_stale(self) -> int:
        expired = self.storage.expire_reservations(utcnow())
        if expired:
            logger.info("invoice_reservations_expired", count=expired)
        return expired
