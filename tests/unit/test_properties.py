"""
Property-based tests using Hypothesis for the sync core.

These tests check bounds and ordering guarantees that must hold for any
input: backoff delays, webhook signature verification, event extraction on
arbitrary JSON, and invoice number incrementing.
"""

import json
import random

import hypothesis.strategies as st
from hypothesis import given, settings

from qbosync.connectors.webhook_handler import extract_events, verify_signature
from qbosync.sync.invoice_numbers import increment_invoice_number
from qbosync.sync.queue import BackoffPolicy
from tests.factories import VERIFIER_TOKEN, sign


# =============================================================================
# Backoff
# =============================================================================


@given(
    attempt=st.integers(min_value=1, max_value=200),
    jitter_a=st.floats(min_value=0.5, max_value=1.0),
    jitter_b=st.floats(min_value=0.5, max_value=1.0),
)
@settings(max_examples=200)
def test_prop_backoff_never_decreases(attempt: int, jitter_a: float, jitter_b: float):
    """delay(n+1) >= delay(n) whatever jitter each draw gets."""
    policy = BackoffPolicy()
    assert policy.delay(attempt + 1, jitter=jitter_b) >= policy.delay(attempt, jitter=jitter_a)


@given(attempt=st.integers(min_value=1, max_value=10_000), seed=st.integers())
@settings(max_examples=200)
def test_prop_backoff_bounded_by_cap(attempt: int, seed: int):
    policy = BackoffPolicy(rng=random.Random(seed))
    delay = policy.delay(attempt)
    assert 0 < delay <= policy.cap_seconds
    assert delay >= min(policy.cap_seconds, policy.base_seconds * 0.5)


def test_backoff_first_delay_within_base_window():
    policy = BackoffPolicy()
    assert policy.delay(1, jitter=0.5) == 15.0
    assert policy.delay(1, jitter=1.0) == 30.0
    assert policy.delay(12, jitter=1.0) == 3600.0


@given(attempts=st.integers(min_value=0, max_value=20))
def test_prop_dead_only_after_budget(attempts: int):
    policy = BackoffPolicy(max_attempts=8)
    assert policy.is_exhausted(attempts) == (attempts >= 9)


# =============================================================================
# Webhook verification and extraction
# =============================================================================


@given(body=st.binary(min_size=1, max_size=512), position=st.integers(min_value=0), flip=st.integers(1, 255))
@settings(max_examples=200)
def test_prop_any_altered_byte_fails_verification(body: bytes, position: int, flip: int):
    signature = sign(body)
    assert verify_signature(body, signature, VERIFIER_TOKEN)

    tampered = bytearray(body)
    tampered[position % len(body)] ^= flip
    assert not verify_signature(bytes(tampered), signature, VERIFIER_TOKEN)


json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=20),
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=20), children, max_size=4),
    max_leaves=30,
)


@given(payload=json_values)
@settings(max_examples=300)
def test_prop_extract_events_never_raises(payload):
    events = extract_events(payload)
    identities = [event.identity for event in events]
    assert len(identities) == len(set(identities))


@given(
    entries=st.lists(
        st.fixed_dictionaries(
            {
                "name": st.sampled_from(["Invoice", "Customer", "Payment"]),
                "id": st.integers(min_value=1, max_value=50).map(str),
                "operation": st.sampled_from(["Create", "Update", "Delete"]),
                "lastUpdated": st.just("2026-03-02T10:15:00.000Z"),
            }
        ),
        max_size=20,
    )
)
def test_prop_extracted_legacy_events_match_distinct_entries(entries):
    payload = json.loads(
        json.dumps({"eventNotifications": [{"realmId": "1", "dataChangeEvent": {"entities": entries}}]})
    )
    distinct = {(e["name"].lower(), e["id"], e["operation"].lower()) for e in entries}
    events = extract_events(payload)
    assert {(e.entity_name, e.entity_id, e.operation) for e in events} == distinct


# =============================================================================
# Invoice numbers
# =============================================================================


@given(value=st.integers(min_value=0, max_value=10**12))
def test_prop_numeric_invoice_numbers_increment(value: int):
    assert increment_invoice_number(str(value)) == str(value + 1)


@given(
    prefix=st.text(alphabet="ABCDEFGHIJKLMNOPQRSTUVWXYZ-", min_size=1, max_size=5),
    digits=st.text(alphabet="0123456789", min_size=1, max_size=6),
)
def test_prop_prefixed_numbers_keep_prefix_and_width(prefix: str, digits: str):
    result = increment_invoice_number(f"{prefix}{digits}")
    assert result.startswith(prefix)
    tail = result[len(prefix):]
    assert int(tail) == int(digits) + 1
    assert len(tail) >= len(digits)
