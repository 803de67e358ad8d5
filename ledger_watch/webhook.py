"""HTTP API for managing subscriptions and live connections."""
import logging
import threading
from flask import Flask, request, jsonify

from .errors import LedgerWatchError, StaleAccountState, SubscriptionRequestInvalid
from .models import parse_subscription

logger = logging.getLogger(__name__)


def _json_body():
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise SubscriptionRequestInvalid("Request body must be a JSON object")
    return body


def _subscriber_id(body):
    subscriber_id = body.get("subscriberId") or body.get("socketId")
    if not subscriber_id or not str(subscriber_id).strip():
        raise SubscriptionRequestInvalid("Missing subscriberId")
    return str(subscriber_id).strip()


class WebhookServer:
    """Flask-based API server exposing the subscription operations."""

    def __init__(self, config, monitor):
        """Initialize the API server."""
        self.config = config
        self.monitor = monitor
        self.app = Flask(__name__)
        self.server_thread = None
        self.running = False

        # Register routes
        self._register_routes()

    @property
    def registry(self):
        return self.monitor.registry

    @property
    def live_push(self):
        return self.monitor.live_push

    def _register_routes(self):
        """Register Flask routes."""

        @self.app.errorhandler(SubscriptionRequestInvalid)
        def invalid_request(error):
            logger.warning("Rejected subscription request: %s", error)
            return jsonify({"success": False, "error": str(error)}), 400

        @self.app.route('/api/track', methods=['POST'])
        def track():
            """Subscribe a subscriber to an account."""
            body = _json_body()
            subscriber_id = _subscriber_id(body)
            subscription = parse_subscription(body)

            snapshot = self.registry.subscribe(
                subscription.account_id, subscriber_id, subscription.preferences)
            # Check the new account right away instead of waiting a full interval
            self.monitor.request_immediate_check()
            return jsonify({"success": True, "balance": snapshot.to_dict()}), 200

        @self.app.route('/api/track', methods=['DELETE'])
        def untrack():
            """Unsubscribe a subscriber from an account."""
            body = _json_body()
            subscriber_id = _subscriber_id(body)
            subscription = parse_subscription(body)

            self.registry.unsubscribe(subscription.account_id, subscriber_id)
            return jsonify({"success": True}), 200

        @self.app.route('/api/tracked', methods=['GET'])
        def tracked():
            """List tracked account ids."""
            return jsonify({"accounts": self.registry.list_tracked()}), 200

        @self.app.route('/api/connections', methods=['POST'])
        def connect():
            """Open a live connection."""
            connection_id = self.live_push.connect()
            return jsonify({"connectionId": connection_id}), 201

        @self.app.route('/api/connections/<connection_id>', methods=['DELETE'])
        def disconnect(connection_id):
            """Close a live connection and drop all of its subscriptions."""
            known = self.live_push.disconnect(connection_id)
            removed = self.registry.remove_subscriber(connection_id)
            if not known and not removed:
                return jsonify({"success": False, "error": "Unknown connection"}), 404
            return jsonify({"success": True, "removedFrom": removed}), 200

        @self.app.route('/api/connections/<connection_id>/events', methods=['GET'])
        def events(connection_id):
            """Return and clear pending live events for a connection."""
            pending = self.live_push.drain(connection_id)
            if pending is None:
                return jsonify({"success": False, "error": "Unknown connection"}), 404
            return jsonify({"events": pending}), 200

        @self.app.route('/api/simulate-transaction', methods=['POST'])
        def simulate_transaction():
            """Send a synthetic change event to an account's subscribers."""
            body = _json_body()
            account_id = body.get("accountId") or body.get("addressId")
            amount = body.get("amount")
            direction = body.get("type")
            if not account_id or not amount or not direction:
                return jsonify({
                    "success": False,
                    "error": "Missing required parameters: accountId, amount, type (incoming/outgoing)"
                }), 400

            try:
                event, report = self.monitor.simulate_transaction(account_id, amount, direction)
            except ValueError as e:
                return jsonify({"success": False, "error": str(e)}), 400
            except KeyError:
                return jsonify({"success": False, "error": "Account is not tracked"}), 404
            except StaleAccountState as e:
                return jsonify({"success": False, "error": str(e)}), 409

            notified = [r.recipient for r in report.delivered if r.success]
            return jsonify({
                "success": True,
                "message": f"Simulated transaction sent to {len(notified)} live subscribers",
                "event": event.to_dict(),
                "notified": notified,
                "pruned": report.pruned,
            }), 200

        @self.app.route('/api/test-connection/<account_id>', methods=['GET'])
        def test_connection(account_id):
            """Query the ledger API directly for one account."""
            try:
                data = self.monitor.fetcher.test_connection(account_id)
            except LedgerWatchError as e:
                logger.error("Ledger API connection test failed: %s", e)
                return jsonify({"success": False, "error": str(e)}), 502
            return jsonify({"success": True, "data": data}), 200

        @self.app.route('/health', methods=['GET'])
        def health_check():
            """Health check endpoint."""
            return jsonify({
                "status": "ok",
                "tracked": len(self.registry),
                "connections": self.live_push.connection_count(),
            }), 200

    def start(self):
        """Start the API server in a separate thread."""
        if self.running:
            logger.warning("API server is already running")
            return

        if not self.config.WEBHOOK_ENABLED:
            logger.info("API server is disabled by configuration")
            return

        def run_server():
            logger.info("Starting API server on %s:%s",
                        self.config.WEBHOOK_HOST, self.config.WEBHOOK_PORT)
            self.app.run(
                host=self.config.WEBHOOK_HOST,
                port=self.config.WEBHOOK_PORT,
                debug=False,  # Never run in debug mode for production
                use_reloader=False,  # Disable reloader to avoid duplicate processes
                threaded=True
            )

        self.server_thread = threading.Thread(target=run_server)
        # Make thread a daemon so it exits when main thread exits
        self.server_thread.daemon = True
        self.server_thread.start()
        self.running = True
        logger.info("API server thread started")
