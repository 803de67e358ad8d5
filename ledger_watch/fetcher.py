"""Balance lookups against the ledger RPC API."""
import logging
import threading

import requests

from .errors import MalformedUpstreamPayload, UpstreamUnavailable
from .models import BalanceSnapshot

logger = logging.getLogger(__name__)


class BalanceFetcher:
    """Fetches the current balance of a ledger account."""

    def __init__(self, config, session=None):
        """Initialize the fetcher with configuration."""
        self.config = config
        self.base_url = config.LEDGER_API_URL.rstrip("/")
        self.timeout = config.FETCH_TIMEOUT
        self._session = session
        self._local = threading.local()

    @property
    def session(self):
        """Return the injected session, or one owned by the calling thread.

        The poll loop and the API threads both fetch; a requests.Session is
        not shared between threads.
        """
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({
                "Accept": "application/json",
                "Content-Type": "application/json",
            })
            self._local.session = session
        return session

    def _balance_url(self, account_id):
        return f"{self.base_url}/balances/{account_id}"

    def _get(self, account_id):
        """Perform the HTTP request and return the decoded JSON body."""
        url = self._balance_url(account_id)
        logger.debug("Querying ledger API: %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"Request for {account_id} failed: {e}") from e

        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"Ledger API returned status {response.status_code} for {account_id}: "
                f"{response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise MalformedUpstreamPayload(f"Response for {account_id} is not JSON") from e

    def fetch(self, account_id):
        """Return the account balance, or a fallback snapshot if the lookup fails.

        Never raises: a failed lookup must not abort a polling pass.
        """
        try:
            data = self._get(account_id)
            balance_data = data.get("balance") if isinstance(data, dict) else None
            if not isinstance(balance_data, dict) or balance_data.get("balance") is None:
                raise MalformedUpstreamPayload(
                    f"No balance in response for {account_id}")

            snapshot = BalanceSnapshot(
                id=balance_data.get("id", account_id),
                balance=str(balance_data["balance"]),
                valid_for_tick=int(balance_data.get("validForTick") or 0),
            )
            logger.debug("Balance for %s: %s", account_id, snapshot.balance)
            return snapshot
        except (UpstreamUnavailable, MalformedUpstreamPayload) as e:
            logger.error("Error fetching balance for %s: %s", account_id, e)
        except Exception as e:
            logger.error("Unexpected error fetching balance for %s: %s", account_id, e)

        logger.info("Using fallback balance for %s", account_id)
        return BalanceSnapshot.fallback(account_id)

    def test_connection(self, account_id):
        """Return the raw API payload for an account, raising on failure."""
        return self._get(account_id)
