"""
Unit tests for invoice number reservations.
"""

import asyncio

import httpx
import pytest

from qbosync.models.enums import ReservationStatus
from qbosync.sync.errors import ConflictError
from qbosync.sync.invoice_numbers import highest_number, increment_invoice_number
from tests.factories import ORG_ID, make_invoice


@pytest.mark.parametrize(
    "current,expected",
    [
        (None, "1001"),
        ("", "1001"),
        ("1041", "1042"),
        ("INV-0099", "INV-0100"),
        ("INV-999", "INV-1000"),
        ("2026-007", "2026-008"),
        ("A/17/B", "18"),
        ("draft", "1001"),
    ],
)
def test_increment_invoice_number(current, expected):
    assert increment_invoice_number(current) == expected


def test_highest_number_uses_trailing_digits():
    assert highest_number(["INV-0009", "INV-0100", "99", None]) == "INV-0100"
    assert highest_number([None, ""]) is None


class TestReserve:
    async def test_first_number_for_new_org(self, services):
        reservation = await services.invoice_numbers.reserve(ORG_ID)

        assert reservation.reserved_number == "1001"
        assert reservation.status == ReservationStatus.RESERVED
        assert reservation.expires_at > reservation.reserved_at

    async def test_next_after_local_invoices_and_reservations(self, services):
        services.storage.write_invoice(make_invoice(invoice_number="1041"))
        first = await services.invoice_numbers.reserve(ORG_ID)
        second = await services.invoice_numbers.reserve(ORG_ID)

        assert (first.reserved_number, second.reserved_number) == ("1042", "1043")

    async def test_remote_last_number_considered(self, services, connected_org, fake_qbo):
        fake_qbo.invoices["500"] = {"Id": "500", "SyncToken": "0", "DocNumber": "2040"}

        reservation = await services.invoice_numbers.reserve(ORG_ID)

        assert reservation.reserved_number == "2041"

    async def test_remote_lookup_failure_falls_back_to_local(self, services, connected_org, fake_qbo):
        fake_qbo.api_failures.append(httpx.Response(503))
        services.storage.write_invoice(make_invoice(invoice_number="1041"))

        assert (await services.invoice_numbers.reserve(ORG_ID)).reserved_number == "1042"

    async def test_concurrent_reservations_are_distinct(self, services):
        reservations = await asyncio.gather(*(services.invoice_numbers.reserve(ORG_ID) for _ in range(5)))

        numbers = [r.reserved_number for r in reservations]
        assert len(set(numbers)) == 5

    async def test_requested_number(self, services):
        reservation = await services.invoice_numbers.reserve(ORG_ID, number="INV-0500")
        assert reservation.reserved_number == "INV-0500"

        with pytest.raises(ConflictError):
            await services.invoice_numbers.reserve(ORG_ID, number="INV-0500")

    async def test_requested_number_used_by_invoice(self, services):
        services.storage.write_invoice(make_invoice(invoice_number="1001"))
        with pytest.raises(ConflictError):
            await services.invoice_numbers.reserve(ORG_ID, number="1001")

    async def test_other_org_numbers_independent(self, services):
        await services.invoice_numbers.reserve(ORG_ID, number="1001")
        other = await services.invoice_numbers.reserve("org-other", number="1001")
        assert other.reserved_number == "1001"


class TestLifecycle:
    async def test_release_frees_number(self, services):
        reservation = await services.invoice_numbers.reserve(ORG_ID, number="1001")

        assert services.invoice_numbers.release(ORG_ID, reservation.reservation_id) is True
        again = await services.invoice_numbers.reserve(ORG_ID, number="1001")
        assert again.reservation_id != reservation.reservation_id

    async def test_mark_used_binds_invoice(self, services):
        reservation = await services.invoice_numbers.reserve(ORG_ID)

        assert services.invoice_numbers.mark_used(ORG_ID, reservation.reservation_id, "inv-9") is True
        stored = services.storage.get_reservation(reservation.reservation_id)
        assert stored.status == ReservationStatus.USED
        assert stored.used_by_invoice_id == "inv-9"

        # A used reservation can no longer be released
        assert services.invoice_numbers.release(ORG_ID, reservation.reservation_id) is False

    async def test_other_org_cannot_touch_reservation(self, services):
        reservation = await services.invoice_numbers.reserve(ORG_ID)
        with pytest.raises(KeyError):
            services.invoice_numbers.release("org-other", reservation.reservation_id)
        with pytest.raises(KeyError):
            services.invoice_numbers.mark_used(ORG_ID, "missing", "inv-1")

    async def test_expired_reservations_free_their_number(self, services):
        short = services.settings.model_copy(update={"invoice_reservation_ttl_minutes": 0})
        services.invoice_numbers.settings = short
        reservation = await services.invoice_numbers.reserve(ORG_ID, number="1001")

        assert services.invoice_numbers.expire_stale() == 1
        assert services.storage.get_reservation(reservation.reservation_id).status == ReservationStatus.EXPIRED
        assert (await services.invoice_numbers.reserve(ORG_ID, number="1001")).reserved_number == "1001"
