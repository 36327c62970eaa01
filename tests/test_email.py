import smtplib
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from sessionguard.service.email import (
    EmailService,
    lockout_message,
    render_html,
    verification_message,
)


class TestTemplates:
    def test_verification_message(self):
        """The link appears in both bodies."""
        url = "http://localhost:8000/api/auth/verify-email?token=abc"
        message = verification_message("Alice", url)

        assert message.subject == "Verify your email"
        assert message.text_body.startswith("Hi Alice,\n\n")
        assert url in message.text_body
        assert "token=abc" in message.html_body

    def test_lockout_message_uses_http_date(self):
        """Lockout end is rendered as an RFC 1123 date in GMT."""
        until = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        message = lockout_message(until, None)

        assert "Lockout ends: Tue, 02 Jan 2024 03:04:05 GMT" in message.text_body
        assert "IP: unknown" in message.text_body

    def test_html_escapes_values(self):
        """Interpolated values cannot inject markup."""
        rendered = render_html(greeting="Hi <script>", button_text="Go", button_url='x" onclick="y')
        assert "<script>" not in rendered
        assert "&lt;script&gt;" in rendered
        assert 'x&quot; onclick=&quot;y' in rendered


class TestEmailService:
    def test_unconfigured_logs_and_succeeds(self):
        """Without SMTP settings messages are logged, not sent."""
        service = EmailService()
        with patch("sessionguard.service.email.smtplib.SMTP") as smtp:
            assert service.send("a@example.com", verification_message("A", "http://x")) is True
        smtp.assert_not_called()

    def test_empty_recipient(self):
        """Nothing is sent to a blank address."""
        assert EmailService().send("  ", verification_message("A", "http://x")) is False

    def test_starttls_delivery(self):
        """Configured STARTTLS delivery logs in and sends once."""
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="user",
            smtp_password="pw",
            from_email="noreply@example.com",
        )
        server = MagicMock()
        with patch("sessionguard.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send("a@example.com", verification_message("A", "http://x")) is True

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pw")
        from_addr, to_addr, _ = server.sendmail.call_args[0]
        assert (from_addr, to_addr) == ("noreply@example.com", "a@example.com")

    def test_smtp_failure_returns_false(self):
        """Relay errors are reported, not raised."""
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        with patch("sessionguard.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.sendmail.side_effect = (
                smtplib.SMTPServerDisconnected("gone")
            )
            assert service.send("a@example.com", verification_message("A", "http://x")) is False

    def test_connection_failure_returns_false(self):
        """Unreachable relays are reported, not raised."""
        service = EmailService(
            smtp_host="smtp.example.com", from_email="noreply@example.com", smtp_use_tls=False
        )
        with patch(
            "sessionguard.service.email.smtplib.SMTP_SSL", side_effect=ConnectionRefusedError()
        ):
            assert service.send("a@example.com", verification_message("A", "http://x")) is False
