"""Fan-out of balance change notifications to subscribers."""
import logging
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List

from .models import chat_id_of

logger = logging.getLogger(__name__)


def short_id(account_id):
    """Shorten long ledger ids for subjects and chat messages."""
    if len(account_id) > 20:
        return f"{account_id[:8]}...{account_id[-6:]}"
    return account_id


def format_timestamp(event):
    return event.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')


def build_email(event):
    """Return (subject, text, html) describing a change event."""
    kind = "Incoming" if event.is_incoming else "Outgoing"
    sign = "+" if event.is_incoming else "-"
    subject = f"{kind} transaction on {short_id(event.account_id)}: {sign}{event.difference}"
    if event.simulated:
        subject = f"[SIMULATED] {subject}"

    text = (
        f"{kind} transaction detected.\n\n"
        f"Account: {event.account_id}\n"
        f"Amount: {sign}{event.difference}\n"
        f"Previous balance: {event.old_balance}\n"
        f"New balance: {event.new_balance}\n"
        f"Detected at: {format_timestamp(event)}"
    )
    color = "#1a7f37" if event.is_incoming else "#cf222e"
    html = (
        f"<h2 style=\"color: {color}\">{kind} transaction detected</h2>"
        f"<table>"
        f"<tr><td>Account</td><td><code>{event.account_id}</code></td></tr>"
        f"<tr><td>Amount</td><td><strong>{sign}{event.difference}</strong></td></tr>"
        f"<tr><td>Previous balance</td><td>{event.old_balance}</td></tr>"
        f"<tr><td>New balance</td><td>{event.new_balance}</td></tr>"
        f"<tr><td>Detected at</td><td>{format_timestamp(event)}</td></tr>"
        f"</table>"
    )
    return subject, text, html


def build_chat_message(event):
    """Return an HTML-formatted chat message describing a change event."""
    if event.is_incoming:
        header = "🟢 <b>Incoming transaction</b>"
        sign = "+"
    else:
        header = "🔴 <b>Outgoing transaction</b>"
        sign = "-"
    lines = [
        header,
        f"Account: <code>{event.account_id}</code>",
        f"Amount: <b>{sign}{event.difference}</b>",
        f"Balance: {event.old_balance} → {event.new_balance}",
        f"Time: {format_timestamp(event)}",
    ]
    if event.simulated:
        lines.append("<i>(simulated)</i>")
    return "\n".join(lines)


@dataclass
class DispatchReport:
    """What happened while dispatching one change event."""
    account_id: str
    delivered: List = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    scheduled: List = field(default_factory=list)

    def results(self):
        """Synchronous results plus any background deliveries that have finished."""
        finished = [f.result() for f in self.scheduled if f.done() and not f.exception()]
        return self.delivered + [r for r in finished if r is not None]


class NotificationDispatcher:
    """Delivers change events to every subscriber of an account.

    Live push is delivered inline. Email and chat messages run on a background
    executor so a slow mail server never stalls the polling loop. A failure
    on one channel or subscriber is logged and never stops the others.
    """

    def __init__(self, registry, live_push, email=None, chat=None,
                 state_manager=None, executor=None, max_workers=4):
        """Initialize the dispatcher with the registry and delivery channels."""
        self.registry = registry
        self.live_push = live_push
        self.email = email
        self.chat = chat
        self.state_manager = state_manager
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="delivery")

    def dispatch(self, account_id, event):
        """Send a change event to everyone following the account."""
        report = DispatchReport(account_id)
        subscribers = sorted(self.registry.subscribers_of(account_id))
        logger.info("Dispatching %s change on %s to %d subscribers",
                    event.direction, account_id, len(subscribers))

        for subscriber_id in subscribers:
            try:
                self._notify_subscriber(account_id, subscriber_id, event, report)
            except Exception as e:
                logger.error("Error notifying %s about %s: %s",
                             subscriber_id, account_id, e)
                logger.debug(traceback.format_exc())
        return report

    def _notify_subscriber(self, account_id, subscriber_id, event, report):
        # Membership may have changed since the snapshot was taken
        if not self.registry.is_subscribed(account_id, subscriber_id):
            return

        preferences = self.registry.preferences_for(account_id, subscriber_id)
        chat_id = chat_id_of(subscriber_id)

        if chat_id is not None:
            if preferences is None:
                # Bot-only subscription mode: one chat message per change
                self._schedule_chat(account_id, chat_id, event, report)
                return
        elif not self.live_push.is_connected(subscriber_id):
            self.registry.prune(account_id, subscriber_id)
            report.pruned.append(subscriber_id)
            return
        else:
            result = self.live_push.deliver(subscriber_id, event)
            self._record(account_id, result)
            report.delivered.append(result)
            if result.success:
                logger.info("Live notification sent to %s", subscriber_id)
            else:
                logger.warning("Live notification to %s failed: %s",
                               subscriber_id, result.error)

        if preferences is None:
            return
        if preferences.email:
            self._schedule_email(account_id, preferences.email, event, report)
        if preferences.chat_id:
            self._schedule_chat(account_id, preferences.chat_id, event, report)

    def _schedule_email(self, account_id, recipient, event, report):
        if self.email is None:
            logger.debug("No email channel configured, skipping %s", recipient)
            return
        subject, text, html = build_email(event)
        report.scheduled.append(self.executor.submit(
            self._deliver_in_background, account_id, self.email.deliver,
            recipient, subject, text, html))

    def _schedule_chat(self, account_id, chat_id, event, report):
        if self.chat is None:
            logger.debug("No chat channel configured, skipping %s", chat_id)
            return
        report.scheduled.append(self.executor.submit(
            self._deliver_in_background, account_id, self.chat.deliver,
            chat_id, build_chat_message(event)))

    def _deliver_in_background(self, account_id, deliver, recipient, *args):
        try:
            result = deliver(recipient, *args)
        except Exception as e:
            logger.error("Delivery to %s raised: %s", recipient, e)
            logger.debug(traceback.format_exc())
            return None
        if not result.success:
            logger.warning("%s delivery to %s failed: %s",
                           result.channel, recipient, result.error)
        self._record(account_id, result)
        return result

    def _record(self, account_id, result):
        if self.state_manager:
            self.state_manager.record_delivery(account_id, result)

    def shutdown(self, wait=True):
        """Stop the background executor if this dispatcher created it."""
        if self._owns_executor:
            self.executor.shutdown(wait=wait)
