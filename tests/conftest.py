import sys
from concurrent.futures import Future
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ledger_watch.channels import CHAT, EMAIL, DeliveryResult, LivePushChannel
from ledger_watch.models import BalanceSnapshot
from ledger_watch.monitor import BalanceMonitor
from ledger_watch.notifier import NotificationDispatcher
from ledger_watch.registry import SubscriptionRegistry
from ledger_watch.state_manager import StateManager


class FakeFetcher:
    """Serves balances from a dict; ids in ``failing`` return the fallback."""

    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.failing = set()
        self.raising = set()
        self.calls = []

    def fetch(self, account_id):
        self.calls.append(account_id)
        if account_id in self.raising:
            raise RuntimeError(f"boom for {account_id}")
        if account_id in self.failing or account_id not in self.balances:
            return BalanceSnapshot.fallback(account_id)
        return BalanceSnapshot(id=account_id, balance=self.balances[account_id], valid_for_tick=1)

    def test_connection(self, account_id):
        return {"balance": {"id": account_id, "balance": self.balances.get(account_id, "0")}}


class InlineExecutor:
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        pass


class RecordingEmail:
    name = EMAIL

    def __init__(self, fail_for=(), raise_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)

    def deliver(self, recipient, subject, text, html):
        if recipient in self.raise_for:
            raise RuntimeError("smtp exploded")
        self.sent.append((recipient, subject, text, html))
        if recipient in self.fail_for:
            return DeliveryResult.failed(EMAIL, recipient, "rejected")
        return DeliveryResult.ok(EMAIL, recipient)


class RecordingChat:
    name = CHAT

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def deliver(self, chat_id, text):
        self.sent.append((chat_id, text))
        if chat_id in self.fail_for:
            return DeliveryResult.failed(CHAT, chat_id, "chat not found")
        return DeliveryResult.ok(CHAT, chat_id)


def make_config(tmp_path, **overrides):
    values = dict(
        LEDGER_API_URL="https://ledger.test/v1",
        FETCH_TIMEOUT=5,
        POLLING_INTERVAL=10,
        CHANGE_EPSILON="0.000001",
        LOG_EVERY_N_PASSES=6,
        SMTP_HOST="",
        SMTP_PORT=587,
        SMTP_USERNAME="",
        SMTP_PASSWORD="",
        SMTP_FROM="",
        TELEGRAM_BOT_TOKEN="",
        DELIVERY_WORKERS=2,
        DATABASE_PATH=str(tmp_path / "state" / "ledger_watch.db"),
        LOG_DIR=str(tmp_path / "logs"),
        WEBHOOK_ENABLED=False,
        WEBHOOK_HOST="127.0.0.1",
        WEBHOOK_PORT=0,
        DEBUG=False,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def state_manager(config):
    return StateManager(config.DATABASE_PATH)


@pytest.fixture
def fetcher():
    return FakeFetcher({"ACC1": "100", "ACC2": "250.5", "ACC3": "0"})


@pytest.fixture
def registry(fetcher, state_manager):
    return SubscriptionRegistry(fetcher, state_manager)


@pytest.fixture
def live_push():
    return LivePushChannel()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def chat():
    return RecordingChat()


@pytest.fixture
def dispatcher(registry, live_push, email, chat, state_manager):
    return NotificationDispatcher(
        registry, live_push, email=email, chat=chat,
        state_manager=state_manager, executor=InlineExecutor())


@pytest.fixture
def monitor(config, registry, fetcher, dispatcher, state_manager, live_push):
    return BalanceMonitor(
        config, registry=registry, fetcher=fetcher, dispatcher=dispatcher,
        state_manager=state_manager, live_push=live_push)
