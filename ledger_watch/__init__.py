"""
A service that watches ledger account balances
and notifies subscribers of changes via multiple channels.
"""

from . import config
from .monitor import BalanceMonitor
from .notifier import NotificationDispatcher
from .registry import SubscriptionRegistry
from .state_manager import StateManager
