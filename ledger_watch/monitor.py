"""Main monitoring service for ledger account balances."""
import logging
import signal
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List

from .channels import EmailChannel, LivePushChannel, TelegramChannel
from .errors import StaleAccountState
from .fetcher import BalanceFetcher
from .models import (INCOMING, OUTGOING, PLACEHOLDER_BALANCE, ChangeEvent,
                     to_decimal, utcnow)
from .notifier import NotificationDispatcher
from .registry import SubscriptionRegistry
from .state_manager import StateManager
from .webhook import WebhookServer

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = Decimal("0.000001")


def detect_change(account_id, old_balance, new_balance, epsilon=DEFAULT_EPSILON):
    """Compare two balance strings and return a ChangeEvent, or None if unchanged.

    Deltas up to and including ``epsilon`` are treated as rounding noise.
    """
    old = to_decimal(old_balance)
    new = to_decimal(new_balance)
    delta = new - old
    if abs(delta) <= epsilon:
        return None
    return ChangeEvent(
        account_id=account_id,
        old_balance=old_balance,
        new_balance=new_balance,
        difference=f"{abs(delta):.6f}",
        direction=INCOMING if delta > 0 else OUTGOING,
    )


@dataclass
class PassSummary:
    """Diagnostic record of one polling pass."""
    timestamp: datetime = field(default_factory=utcnow)
    pass_number: int = 0
    check_count: int = 0
    entries: List[dict] = field(default_factory=list)

    @property
    def has_changes(self):
        return any(entry["change_detected"] for entry in self.entries)

    @property
    def changed_accounts(self):
        return [entry["account_id"] for entry in self.entries if entry["change_detected"]]

    def to_dict(self):
        return {
            "timestamp": self.timestamp.isoformat(),
            "pass_number": self.pass_number,
            "check_count": self.check_count,
            "changed_accounts": self.changed_accounts,
            "entries": self.entries,
        }


class BalanceMonitor:
    """Polls tracked accounts and hands detected changes to the dispatcher."""

    def __init__(self, config, registry=None, fetcher=None, dispatcher=None,
                 state_manager=None, live_push=None):
        """Initialize the monitor with configuration, building any missing services."""
        self.config = config
        self.running = False
        self.pass_count = 0
        self.epsilon = Decimal(str(config.CHANGE_EPSILON))
        self.log_every = max(1, int(config.LOG_EVERY_N_PASSES))
        self._wake = threading.Event()

        # Initialize services
        if state_manager is None:
            state_manager = StateManager(config.DATABASE_PATH)
        if fetcher is None:
            fetcher = BalanceFetcher(config)
        if registry is None:
            registry = SubscriptionRegistry(fetcher, state_manager)
        if live_push is None:
            live_push = LivePushChannel()
        if dispatcher is None:
            dispatcher = NotificationDispatcher(
                registry,
                live_push,
                email=EmailChannel(config),
                chat=TelegramChannel(config),
                state_manager=state_manager,
                max_workers=config.DELIVERY_WORKERS,
            )
        self.state_manager = state_manager
        self.fetcher = fetcher
        self.registry = registry
        self.live_push = live_push
        self.dispatcher = dispatcher

        # Initialize API server if enabled
        self.webhook_server = None
        if config.WEBHOOK_ENABLED:
            self.webhook_server = WebhookServer(config, self)

    def setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        # pylint: disable=unused-argument
        def signal_handler(sig, frame):
            logger.info("Received signal %s, shutting down gracefully...", sig)
            self.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def check_balances(self):
        """Run one polling pass over every tracked account."""
        self.pass_count += 1
        summary = PassSummary(pass_number=self.pass_count)
        account_ids = self.registry.list_tracked()
        logger.debug("Checking %d tracked accounts", len(account_ids))

        for account_id in account_ids:
            try:
                self.check_account(account_id, summary)
            except Exception as e:
                logger.error("Error checking account %s: %s", account_id, e)
                logger.debug(traceback.format_exc())
                entry = next((item for item in summary.entries
                              if item["account_id"] == account_id), None)
                if entry is None:
                    entry = self._entry(account_id, None)
                    summary.entries.append(entry)
                entry["error"] = str(e)

        if summary.has_changes or self.pass_count % self.log_every == 0:
            logger.info("Polling pass %d: %d checked, changes in %s",
                        summary.pass_number, summary.check_count,
                        summary.changed_accounts or "none")
            self.state_manager.record_pass(summary)
        return summary

    def check_account(self, account_id, summary):
        """Fetch one account's balance and dispatch an event if it changed."""
        account = self.registry.get(account_id)
        if account is None:
            # Unsubscribed since the pass started
            return

        entry = self._entry(account_id, account)
        summary.entries.append(entry)

        if not account.subscribers:
            logger.debug("Account %s has no subscribers, skipping", account_id)
            return

        summary.check_count += 1
        snapshot = self.fetcher.fetch(account_id)
        entry["new_balance"] = snapshot.balance

        if snapshot.is_fallback:
            # Don't compare against a placeholder; try again next pass
            entry["error"] = "balance unavailable"
            self.registry.record_check(account_id, generation=account.generation)
            return

        if account.pending_initialization and account.balance == PLACEHOLDER_BALANCE:
            logger.info("Initializing balance for account %s: %s",
                        account_id, snapshot.balance)
            if not self.registry.record_check(account_id, balance=snapshot.balance, seeded=True,
                                              generation=account.generation,
                                              baseline=account.balance):
                logger.info("Account %s changed during the check, skipping seed", account_id)
            return

        event = detect_change(account_id, account.balance, snapshot.balance, self.epsilon)
        if event is None:
            logger.debug("No change for account %s, balance: %s",
                         account_id, snapshot.balance)
            self.registry.record_check(account_id, seeded=account.pending_initialization,
                                       generation=account.generation,
                                       baseline=account.balance)
            return

        # The entry may have been re-created or updated while the fetch was in flight
        if not self.registry.record_check(account_id, balance=snapshot.balance, seeded=True,
                                          generation=account.generation,
                                          baseline=account.balance):
            logger.info("Account %s changed during the check, dropping change", account_id)
            return

        entry["change_detected"] = True
        logger.info("Change detected on account %s: %s -> %s (%s %s)",
                    account_id, account.balance, snapshot.balance,
                    event.direction, event.difference)
        self.dispatcher.dispatch(account_id, event)

    @staticmethod
    def _entry(account_id, account):
        subscribers = sorted(account.subscribers) if account else []
        return {
            "account_id": account_id,
            "previous_balance": account.balance if account else None,
            "new_balance": None,
            "subscriber_count": len(subscribers),
            "subscribers": subscribers,
            "change_detected": False,
            "error": None,
        }

    def simulate_transaction(self, account_id, amount, direction):
        """Push a synthetic change through the dispatcher for a tracked account."""
        if direction not in (INCOMING, OUTGOING):
            raise ValueError(f"type must be '{INCOMING}' or '{OUTGOING}'")
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError("amount must be a positive number")

        account = self.registry.get(account_id)
        if account is None:
            raise KeyError(account_id)

        old = to_decimal(account.balance)
        new = old + amount if direction == INCOMING else old - amount
        new_balance = format(new, "f")
        event = ChangeEvent(
            account_id=account_id,
            old_balance=account.balance,
            new_balance=new_balance,
            difference=f"{amount:.6f}",
            direction=direction,
            simulated=True,
        )
        logger.info("Simulating %s transaction of %s on account %s",
                    direction, event.difference, account_id)
        if not self.registry.record_check(account_id, balance=new_balance, seeded=True,
                                          generation=account.generation,
                                          baseline=account.balance):
            raise StaleAccountState(
                f"Balance of {account_id} changed while simulating, try again")
        report = self.dispatcher.dispatch(account_id, event)
        return event, report

    def request_immediate_check(self):
        """Wake the loop so the next pass starts without waiting the full interval."""
        self._wake.set()

    def stop(self):
        """Ask the loop to finish after the current pass."""
        self.running = False
        self._wake.set()

    def run(self):
        """Start the monitoring loop."""
        self.setup_signal_handlers()
        self.registry.load()
        logger.info("Starting balance monitor for %d accounts, polling every %ss",
                    len(self.registry), self.config.POLLING_INTERVAL)
        self.running = True

        # Start the API server if enabled
        if self.webhook_server and self.config.WEBHOOK_ENABLED:
            self.webhook_server.start()
            logger.info("API server started")

        while self.running:
            try:
                self.check_balances()
            except Exception as e:
                logger.error("Unhandled exception in monitoring loop: %s", e)
                logger.debug(traceback.format_exc())

            # The next pass is scheduled only once this one has finished
            self._wake.wait(self.config.POLLING_INTERVAL)
            self._wake.clear()

        self.dispatcher.shutdown(wait=False)
        logger.info("Balance monitor stopped")
