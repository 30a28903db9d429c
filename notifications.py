"""
Customer emails sent after an order is placed.

Sending is best effort: every failure is logged and reported as False so the
caller can record it, never raised.
"""

import logging
import os
import smtplib
from email.message import EmailMessage
from typing import List, Optional

logger = logging.getLogger(__name__)


class EmailNotifier:
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 user: Optional[str] = None, password: Optional[str] = None,
                 sender_name: Optional[str] = None):
        self.host = host or os.getenv("SMTP_HOST", "")
        self.port = port or int(os.getenv("SMTP_PORT", "465"))
        self.user = user or os.getenv("SMTP_USER", "")
        self.password = password or os.getenv("SMTP_PASSWORD", "")
        self.sender_name = sender_name or os.getenv("EMAIL_SENDER_NAME", "Roastery")

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def _send(self, to_email: str, subject: str, body: str) -> bool:
        if not self.configured:
            logger.info(f"SMTP not configured, skipping email '{subject}' to {to_email}")
            return False
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.sender_name} <{self.user}>"
        msg["To"] = to_email
        msg.set_content(body)
        try:
            with smtplib.SMTP_SSL(self.host, self.port) as smtp:
                smtp.login(self.user, self.password)
                smtp.send_message(msg)
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to_email}: {e}")
            return False

    def send_welcome_email(self, customer_name: str, email: str, password: str, order_id: str) -> bool:
        body = "\n".join([
            f"Hello {customer_name},",
            "",
            f"Thank you for your order #{order_id}. We created an account for you so you can follow it.",
            "",
            f"Email: {email}",
            f"Temporary password: {password}",
            "",
            "Please change your password after your first login.",
            "",
            self.sender_name,
        ])
        return self._send(email, f"Welcome! Your order #{order_id}", body)

    def send_thank_you_email(self, customer_name: str, email: str, order_id: str,
                             order_total: float, items: List[dict]) -> bool:
        lines = [f"- {i['name']} x{i['quantity']}: {i['unit_price']:.2f} AED" for i in items]
        body = "\n".join([
            f"Hello {customer_name},",
            "",
            f"Thank you for your order #{order_id}.",
            "",
            *lines,
            "",
            f"Total: {order_total:.2f} AED",
            "",
            self.sender_name,
        ])
        return self._send(email, f"Thank you for your order #{order_id}", body)
