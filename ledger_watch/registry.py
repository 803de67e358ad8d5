"""In-memory registry of tracked accounts and their subscribers."""
import itertools
import logging
import threading

from .models import BalanceSnapshot, TrackedAccount, utcnow

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """Owns the account -> subscribers and subscriber -> accounts mappings.

    Every mutation updates both sides under a single lock and never holds the
    lock across a network call. The set of tracked ids is written to the state
    manager after each change; a failed write is logged and the in-memory state
    stays authoritative until the next successful save.
    """

    def __init__(self, fetcher, state_manager=None):
        """Initialize the registry with a balance fetcher and optional persistence."""
        self.fetcher = fetcher
        self.state_manager = state_manager
        self._accounts = {}
        self._subscriber_accounts = {}
        self._lock = threading.RLock()
        self._generations = itertools.count(1)

    def __len__(self):
        with self._lock:
            return len(self._accounts)

    def __contains__(self, account_id):
        with self._lock:
            return account_id in self._accounts

    def restore(self, account_ids):
        """Seed placeholder entries for ids loaded from persistence."""
        restored = 0
        with self._lock:
            for account_id in account_ids:
                if account_id in self._accounts:
                    continue
                self._accounts[account_id] = TrackedAccount(
                    id=account_id, pending_initialization=True,
                    generation=next(self._generations))
                restored += 1
        logger.info("Restored %d tracked accounts", restored)
        return restored

    def load(self):
        """Restore tracked ids from the state manager, if one is configured."""
        if not self.state_manager:
            return 0
        return self.restore(sorted(self.state_manager.load_tracked_accounts()))

    def subscribe(self, account_id, subscriber_id, preferences=None):
        """Attach a subscriber to an account and return the account's balance.

        A new account is created with a freshly fetched balance. If the fetch
        failed, the account keeps the placeholder balance and is seeded silently
        by the next poll.
        """
        with self._lock:
            existing = self._accounts.get(account_id)
            needs_fetch = existing is None or existing.pending_initialization
            known_balance = existing.balance if existing else None

        if needs_fetch:
            snapshot = self.fetcher.fetch(account_id)
        else:
            snapshot = BalanceSnapshot(id=account_id, balance=known_balance)

        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                logger.info("Creating new tracking for account %s", account_id)
                account = TrackedAccount(
                    id=account_id,
                    balance=snapshot.balance,
                    pending_initialization=snapshot.is_fallback,
                    generation=next(self._generations),
                )
                self._accounts[account_id] = account
            elif needs_fetch and account.pending_initialization and not snapshot.is_fallback:
                account.balance = snapshot.balance
                account.pending_initialization = False
                account.last_checked_at = utcnow()

            account.subscribers.add(subscriber_id)
            self._subscriber_accounts.setdefault(subscriber_id, set()).add(account_id)
            if preferences is not None:
                account.preferences[subscriber_id] = preferences

            logger.info("Subscriber %s now follows account %s (%d subscribers)",
                        subscriber_id, account_id, len(account.subscribers))
            self._persist_locked()

        return snapshot

    def unsubscribe(self, account_id, subscriber_id):
        """Detach a subscriber from an account. Unknown pairs are ignored."""
        with self._lock:
            if self._detach_locked(account_id, subscriber_id):
                logger.info("Subscriber %s stopped following account %s",
                            subscriber_id, account_id)
                self._persist_locked()

    def prune(self, account_id, subscriber_id):
        """Drop a subscriber whose connection is gone, along with its preferences."""
        with self._lock:
            if self._detach_locked(account_id, subscriber_id):
                logger.warning("Pruned disconnected subscriber %s from account %s",
                               subscriber_id, account_id)
                self._persist_locked()

    def remove_subscriber(self, subscriber_id):
        """Detach a subscriber from every account it follows."""
        with self._lock:
            account_ids = list(self._subscriber_accounts.get(subscriber_id, ()))
            if not account_ids:
                return []
            for account_id in account_ids:
                self._detach_locked(account_id, subscriber_id)
            self._subscriber_accounts.pop(subscriber_id, None)
            logger.info("Removed subscriber %s from %d accounts",
                        subscriber_id, len(account_ids))
            self._persist_locked()
        return account_ids

    def list_tracked(self):
        """Return a snapshot of tracked account ids in insertion order."""
        with self._lock:
            return list(self._accounts)

    def get(self, account_id):
        """Return a copy of an account's state, or None if it isn't tracked."""
        with self._lock:
            account = self._accounts.get(account_id)
            return account.copy() if account else None

    def subscribers_of(self, account_id):
        with self._lock:
            account = self._accounts.get(account_id)
            return set(account.subscribers) if account else set()

    def is_subscribed(self, account_id, subscriber_id):
        with self._lock:
            account = self._accounts.get(account_id)
            return account is not None and subscriber_id in account.subscribers

    def accounts_of(self, subscriber_id):
        with self._lock:
            return set(self._subscriber_accounts.get(subscriber_id, ()))

    def preferences_for(self, account_id, subscriber_id):
        """Return the subscriber's preferences for an account, or None if it has none."""
        with self._lock:
            account = self._accounts.get(account_id)
            if not account:
                return None
            return account.preferences.get(subscriber_id)

    def record_check(self, account_id, balance=None, seeded=False,
                     generation=None, baseline=None):
        """Apply a poll result. Returns False if the account is no longer tracked.

        ``generation`` and ``baseline`` are the values the caller read before
        fetching; if the entry was re-created or its balance moved since then,
        nothing is applied and False is returned.
        """
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            if generation is not None and account.generation != generation:
                return False
            if baseline is not None and account.balance != baseline:
                return False
            if balance is not None:
                account.balance = balance
            if seeded:
                account.pending_initialization = False
            account.last_checked_at = utcnow()
            return True

    def check_invariants(self):
        """Return a list of inconsistencies between the two indices."""
        problems = []
        with self._lock:
            for account_id, account in self._accounts.items():
                if not account.subscribers and not account.pending_initialization:
                    problems.append(f"account {account_id} has no subscribers")
                for subscriber_id in account.subscribers:
                    if account_id not in self._subscriber_accounts.get(subscriber_id, ()):
                        problems.append(
                            f"{subscriber_id} -> {account_id} missing from reverse index")
                for subscriber_id in account.preferences:
                    if subscriber_id not in account.subscribers:
                        problems.append(
                            f"preferences for {subscriber_id} on {account_id} without membership")
            for subscriber_id, account_ids in self._subscriber_accounts.items():
                if not account_ids:
                    problems.append(f"subscriber {subscriber_id} has an empty account set")
                for account_id in account_ids:
                    account = self._accounts.get(account_id)
                    if account is None or subscriber_id not in account.subscribers:
                        problems.append(
                            f"{account_id} -> {subscriber_id} missing from forward index")
        return problems

    def _detach_locked(self, account_id, subscriber_id):
        changed = False
        account = self._accounts.get(account_id)
        if account is not None and subscriber_id in account.subscribers:
            account.subscribers.discard(subscriber_id)
            account.preferences.pop(subscriber_id, None)
            changed = True
            if not account.subscribers:
                # Nobody is watching, stop polling this account
                del self._accounts[account_id]
                logger.info("Account %s has no subscribers left, no longer tracked",
                            account_id)

        account_ids = self._subscriber_accounts.get(subscriber_id)
        if account_ids is not None and account_id in account_ids:
            account_ids.discard(account_id)
            changed = True
            if not account_ids:
                del self._subscriber_accounts[subscriber_id]
        return changed

    def _persist_locked(self):
        if not self.state_manager:
            return
        if not self.state_manager.save_tracked_accounts(set(self._accounts)):
            logger.warning("Tracked accounts not persisted, keeping in-memory state")
