from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import format_datetime
from typing import Optional, Sequence

from sessionguard.logging import email_fingerprint, get_logger

logger = get_logger(__name__)

APP_NAME = "Sessionguard"
BRAND_COLOR = "#4f46e5"
BACKGROUND_COLOR = "#f4f4f5"


@dataclass
class EmailMessage:
    subject: str
    text_body: str
    html_body: str


def render_html(
    *,
    greeting: str = "",
    body_lines: Sequence[str] = (),
    button_text: str = "",
    button_url: str = "",
    footer_text: str = "",
) -> str:
    """Render a branded transactional email; every interpolated value is escaped."""
    parts = [
        '<!doctype html><html><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width,initial-scale=1.0"></head>',
        f'<body style="margin:0;padding:0;background-color:{BACKGROUND_COLOR};'
        "font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Arial,sans-serif;\">",
        f'<table role="presentation" width="100%" cellpadding="0" cellspacing="0" '
        f'style="background-color:{BACKGROUND_COLOR};"><tr><td align="center" style="padding:40px 16px;">',
        '<table role="presentation" width="600" cellpadding="0" cellspacing="0" '
        'style="max-width:600px;width:100%;border-radius:12px;overflow:hidden;">',
        f'<tr><td style="background-color:{BRAND_COLOR};padding:28px 40px;text-align:center;">'
        f'<span style="color:#ffffff;font-size:24px;font-weight:700;">{html.escape(APP_NAME)}</span>'
        "</td></tr>",
        '<tr><td style="background-color:#ffffff;padding:40px;">',
    ]
    if greeting:
        parts.append(
            '<p style="margin:0 0 20px;font-size:18px;font-weight:600;color:#18181b;">'
            f"{html.escape(greeting)}</p>"
        )
    for line in body_lines:
        parts.append(
            '<p style="margin:0 0 16px;font-size:15px;line-height:1.6;color:#3f3f46;">'
            f"{html.escape(line)}</p>"
        )
    if button_text and button_url:
        parts.append(
            '<table role="presentation" cellpadding="0" cellspacing="0" style="margin:28px 0;"><tr><td>'
            f'<a href="{html.escape(button_url)}" target="_blank" '
            f'style="display:inline-block;background-color:{BRAND_COLOR};color:#ffffff;'
            'font-size:15px;font-weight:600;text-decoration:none;padding:14px 32px;border-radius:8px;">'
            f"{html.escape(button_text)}</a></td></tr></table>"
        )
    if footer_text:
        parts.append(
            '<p style="margin:20px 0 0;font-size:13px;line-height:1.5;color:#a1a1aa;">'
            f"{html.escape(footer_text)}</p>"
        )
    parts.append("</td></tr>")
    parts.append(
        '<tr><td style="padding:24px 40px;text-align:center;">'
        f'<p style="margin:0;font-size:12px;color:#a1a1aa;">{html.escape(APP_NAME)}</p></td></tr>'
    )
    parts.append("</table></td></tr></table></body></html>")
    return "".join(parts)


def verification_message(name: str, verification_url: str) -> EmailMessage:
    text_body = (
        f"Hi {name},\n\n"
        "Please verify your email by clicking the link below:\n"
        f"{verification_url}\n\n"
        "If you did not create an account, you can ignore this email.\n"
    )
    html_body = render_html(
        greeting=f"Hi {name},",
        body_lines=["Please verify your email by clicking the link below:"],
        button_text="Verify email",
        button_url=verification_url,
        footer_text="If you did not create an account, you can ignore this email.",
    )
    return EmailMessage("Verify your email", text_body, html_body)


def lockout_message(locked_until: datetime, ip: Optional[str]) -> EmailMessage:
    until = format_datetime(locked_until.astimezone(timezone.utc), usegmt=True)
    ip_value = ip or "unknown"
    text_body = (
        "We locked your account after too many failed login attempts.\n\n"
        f"Lockout ends: {until}\nIP: {ip_value}\n\n"
        "If this wasn't you, please reset your password."
    )
    html_body = render_html(
        body_lines=[
            "We locked your account after too many failed login attempts.",
            f"Lockout ends: {until}",
            f"IP: {ip_value}",
        ],
        footer_text="If this wasn't you, please reset your password.",
    )
    return EmailMessage("Your account has been locked", text_body, html_body)


class EmailService:
    """Transactional mail over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and tests free of a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = APP_NAME,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build(self, to_email: str, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if message.text_body:
            msg.attach(MIMEText(message.text_body, "plain", "utf-8"))
        if message.html_body:
            msg.attach(MIMEText(message.html_body, "html", "utf-8"))
        return msg

    def send(self, to_email: str, message: EmailMessage) -> bool:
        """Send one message. Returns True if it was handed to the relay."""
        recipient = (to_email or "").strip()
        if not recipient or not (message.text_body or message.html_body):
            logger.warning("email_invalid_message", subject=message.subject)
            return False

        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                email_hash=email_fingerprint(recipient),
                subject=message.subject,
            )
            return True

        try:
            payload = self._build(recipient, message).as_string()
            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, payload)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, payload)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", email_hash=email_fingerprint(recipient))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", email_hash=email_fingerprint(recipient), subject=message.subject)
        return True
