"""Tests for the delivery channels."""
from unittest.mock import MagicMock, Mock, patch

import requests

from conftest import make_config
from ledger_watch.channels import EmailChannel, LivePushChannel, TelegramChannel
from ledger_watch.models import ChangeEvent


def _event():
    return ChangeEvent("ACC1", "1", "2", "1.000000", "incoming")


class TestLivePushChannel:

    def test_deliver_and_drain(self):
        hub = LivePushChannel()
        conn = hub.connect()

        result = hub.deliver(conn, _event())

        assert result.success
        assert hub.drain(conn)[0]["type"] == "incoming"
        assert hub.drain(conn) == []

    def test_unknown_connection_fails(self):
        hub = LivePushChannel()

        result = hub.deliver("ghost", _event())

        assert not result.success
        assert hub.drain("ghost") is None

    def test_disconnect(self):
        hub = LivePushChannel()
        conn = hub.connect("fixed-id")

        assert conn == "fixed-id"
        assert hub.disconnect(conn) is True
        assert hub.disconnect(conn) is False
        assert not hub.is_connected(conn)

    def test_pending_queue_is_bounded(self):
        hub = LivePushChannel(max_pending=2)
        conn = hub.connect()
        for _ in range(5):
            hub.deliver(conn, _event())

        assert len(hub.drain(conn)) == 2


class TestTelegramChannel:

    def test_unconfigured_bot_is_a_noop(self, tmp_path):
        session = Mock()
        channel = TelegramChannel(make_config(tmp_path), session=session)

        result = channel.deliver("123", "hello")

        assert result.success
        session.post.assert_not_called()

    def test_sends_message(self, tmp_path):
        session = Mock()
        session.post.return_value = Mock(status_code=200)
        channel = TelegramChannel(make_config(tmp_path, TELEGRAM_BOT_TOKEN="tok"), session=session)

        result = channel.deliver("123", "hello")

        assert result.success
        url = session.post.call_args[0][0]
        assert url == "https://api.telegram.org/bottok/sendMessage"
        assert session.post.call_args[1]["json"]["chat_id"] == "123"

    def test_http_error_is_reported(self, tmp_path):
        session = Mock()
        session.post.return_value = Mock(status_code=400, text="chat not found")
        channel = TelegramChannel(make_config(tmp_path, TELEGRAM_BOT_TOKEN="tok"), session=session)

        result = channel.deliver("123", "hello")

        assert not result.success
        assert "400" in result.error

    def test_network_error_is_reported(self, tmp_path):
        session = Mock()
        session.post.side_effect = requests.ConnectionError("down")
        channel = TelegramChannel(make_config(tmp_path, TELEGRAM_BOT_TOKEN="tok"), session=session)

        result = channel.deliver("123", "hello")

        assert not result.success
        assert "down" in result.error


class TestEmailChannel:

    def test_unconfigured_channel_fails(self, tmp_path):
        channel = EmailChannel(make_config(tmp_path))

        result = channel.deliver("me@example.com", "s", "t", "<p>h</p>")

        assert not result.success
        assert "not configured" in result.error

    @patch("ledger_watch.channels.smtplib.SMTP")
    def test_sends_multipart_message(self, mock_smtp, tmp_path):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server
        config = make_config(tmp_path, SMTP_HOST="smtp.test", SMTP_USERNAME="bot@test",
                             SMTP_PASSWORD="pw", SMTP_FROM="alerts@test")
        channel = EmailChannel(config)

        result = channel.deliver("me@example.com", "Subject", "text body", "<p>html</p>")

        assert result.success
        mock_smtp.assert_called_once_with("smtp.test", 587, timeout=10)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@test", "pw")
        from_addr, to_addrs, body = server.sendmail.call_args[0]
        assert from_addr == "alerts@test"
        assert to_addrs == ["me@example.com"]
        assert "Subject: Subject" in body
        assert "multipart/alternative" in body

    @patch("ledger_watch.channels.smtplib.SMTP")
    def test_smtp_error_is_reported(self, mock_smtp, tmp_path):
        mock_smtp.side_effect = OSError("connection refused")
        channel = EmailChannel(make_config(tmp_path, SMTP_HOST="smtp.test"))

        result = channel.deliver("me@example.com", "s", "t", "h")

        assert not result.success
        assert "connection refused" in result.error
