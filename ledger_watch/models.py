"""Data types shared by the registry, monitor and notifier."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Set, Union

from .errors import SubscriptionRequestInvalid

PLACEHOLDER_BALANCE = "0"
CHAT_NAMESPACE = "chat:"

INCOMING = "incoming"
OUTGOING = "outgoing"


def utcnow():
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def to_decimal(value):
    """Parse a balance string, treating anything unparseable as zero."""
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal(0)
    if not number.is_finite():
        return Decimal(0)
    return number


def chat_id_of(subscriber_id):
    """Return the chat id for a chat-namespaced identity, else None."""
    if subscriber_id.startswith(CHAT_NAMESPACE):
        return subscriber_id[len(CHAT_NAMESPACE):] or None
    return None


@dataclass(frozen=True)
class BalanceSnapshot:
    """One balance reading for an account."""
    id: str
    balance: str
    valid_for_tick: int = 0
    is_fallback: bool = False

    @classmethod
    def fallback(cls, account_id):
        return cls(id=account_id, balance=PLACEHOLDER_BALANCE,
                   valid_for_tick=0, is_fallback=True)

    def to_dict(self):
        return {"id": self.id, "balance": self.balance,
                "validForTick": self.valid_for_tick}


@dataclass(frozen=True)
class DeliveryPreferences:
    """Extra channels a subscriber wants besides live push."""
    email: Optional[str] = None
    chat_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        if not data:
            return cls()
        email = data.get("email") or None
        chat_id = data.get("chatId", data.get("chat_id")) or None
        return cls(email=email, chat_id=str(chat_id) if chat_id else None)

    def to_dict(self):
        return {"email": self.email, "chatId": self.chat_id}


@dataclass
class TrackedAccount:
    """In-memory state for one watched ledger account."""
    id: str
    balance: str = PLACEHOLDER_BALANCE
    pending_initialization: bool = False
    last_checked_at: datetime = field(default_factory=utcnow)
    subscribers: Set[str] = field(default_factory=set)
    preferences: Dict[str, DeliveryPreferences] = field(default_factory=dict)
    # Bumped each time an entry is created for this id
    generation: int = 0

    def copy(self):
        return TrackedAccount(
            id=self.id,
            balance=self.balance,
            pending_initialization=self.pending_initialization,
            last_checked_at=self.last_checked_at,
            subscribers=set(self.subscribers),
            preferences=dict(self.preferences),
            generation=self.generation,
        )


@dataclass(frozen=True)
class ChangeEvent:
    """A detected balance change, independent of any transport."""
    account_id: str
    old_balance: str
    new_balance: str
    difference: str
    direction: str
    timestamp: datetime = field(default_factory=utcnow)
    simulated: bool = False

    @property
    def is_incoming(self):
        return self.direction == INCOMING

    def to_dict(self):
        payload = {
            "accountId": self.account_id,
            "oldBalance": self.old_balance,
            "newBalance": self.new_balance,
            "difference": self.difference,
            "type": self.direction,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.simulated:
            payload["simulated"] = True
        return payload


@dataclass(frozen=True)
class BasicSubscription:
    """Legacy subscription: only an account id."""
    account_id: str

    @property
    def preferences(self):
        return None


@dataclass(frozen=True)
class PreferenceSubscription:
    """Subscription carrying explicit delivery preferences."""
    account_id: str
    preferences: DeliveryPreferences


Subscription = Union[BasicSubscription, PreferenceSubscription]


def parse_subscription(payload):
    """Normalize a raw subscription payload into a Subscription variant.

    Accepts either a bare account id string (legacy clients) or a mapping
    with ``accountId`` and an optional ``preferences`` object.
    """
    if isinstance(payload, str):
        account_id = payload.strip()
        if not account_id:
            raise SubscriptionRequestInvalid("Missing accountId")
        return BasicSubscription(account_id)

    if not isinstance(payload, dict):
        raise SubscriptionRequestInvalid("Subscription payload must be an id or an object")

    account_id = payload.get("accountId") or payload.get("addressId")
    if not account_id or not str(account_id).strip():
        raise SubscriptionRequestInvalid("Missing accountId")
    account_id = str(account_id).strip()

    if "preferences" in payload and payload["preferences"] is not None:
        if not isinstance(payload["preferences"], dict):
            raise SubscriptionRequestInvalid("preferences must be an object")
        return PreferenceSubscription(
            account_id, DeliveryPreferences.from_dict(payload["preferences"]))
    return BasicSubscription(account_id)
