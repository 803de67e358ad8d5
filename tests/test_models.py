"""Tests for subscription payload parsing and value helpers."""
from decimal import Decimal

import pytest

from ledger_watch.errors import SubscriptionRequestInvalid
from ledger_watch.models import (BasicSubscription, ChangeEvent, DeliveryPreferences,
                                 PreferenceSubscription, chat_id_of, parse_subscription,
                                 to_decimal)


def test_bare_id_is_basic_subscription():
    assert parse_subscription(" ACC1 ") == BasicSubscription("ACC1")


def test_object_without_preferences_is_basic():
    subscription = parse_subscription({"accountId": "ACC1"})

    assert subscription == BasicSubscription("ACC1")
    assert subscription.preferences is None


def test_object_with_preferences():
    subscription = parse_subscription({
        "accountId": "ACC1",
        "preferences": {"email": "me@example.com", "chatId": 42},
    })

    assert subscription == PreferenceSubscription(
        "ACC1", DeliveryPreferences(email="me@example.com", chat_id="42"))


def test_legacy_address_key():
    assert parse_subscription({"addressId": "ACC1"}).account_id == "ACC1"


@pytest.mark.parametrize("payload", ["", "   ", {}, {"accountId": ""}, None, 12,
                                     {"accountId": "A", "preferences": "email"}])
def test_invalid_payloads(payload):
    with pytest.raises(SubscriptionRequestInvalid):
        parse_subscription(payload)


@pytest.mark.parametrize("raw,expected", [
    ("100", Decimal("100")),
    ("100.000001", Decimal("100.000001")),
    ("", Decimal(0)),
    ("abc", Decimal(0)),
    (None, Decimal(0)),
    ("NaN", Decimal(0)),
])
def test_to_decimal(raw, expected):
    assert to_decimal(raw) == expected


def test_chat_id_of():
    assert chat_id_of("chat:123") == "123"
    assert chat_id_of("chat:") is None
    assert chat_id_of("socket-1") is None


def test_change_event_payload():
    event = ChangeEvent("ACC1", "1", "2", "1.000000", "incoming")
    payload = event.to_dict()

    assert payload["type"] == "incoming"
    assert "simulated" not in payload
    assert event.is_incoming
