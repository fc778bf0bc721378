"""
notify.py
Payment receipt delivery (email). Best effort: callers log failures and move on.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from email.message import EmailMessage

from config import Settings
from errors import NotificationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Receipt:
    member_name: str
    amount: Decimal
    paid_on: date
    receipt_id: str
    membership_name: str
    valid_from: date
    valid_to: date


def render_receipt(receipt: Receipt, gym_name: str) -> str:
    return "\n".join(
        [
            f"Hi {receipt.member_name},",
            "",
            f"Thank you for your payment to {gym_name}. Here is your receipt.",
            "",
            f"Receipt ID:   {receipt.receipt_id}",
            f"Date:         {receipt.paid_on.isoformat()}",
            f"Membership:   {receipt.membership_name}",
            f"Valid from:   {receipt.valid_from.isoformat()}",
            f"Valid to:     {receipt.valid_to.isoformat()}",
            f"Amount paid:  {receipt.amount:.2f}",
            "",
            f"See you at {gym_name}!",
        ]
    )


class Notifier:
    """Interface: send_receipt returns True when the receipt went out."""

    def send_receipt(self, member_email: str, receipt: Receipt) -> bool:
        raise NotImplementedError


class NullNotifier(Notifier):
    def send_receipt(self, member_email: str, receipt: Receipt) -> bool:
        logger.info("Receipt %s for %s not sent (no mail server configured)", receipt.receipt_id, member_email)
        return False


class SmtpNotifier(Notifier):
    def __init__(self, settings: Settings):
        if not settings.smtp_host or not settings.smtp_sender:
            raise NotificationError("SMTP host and sender must be configured to send receipts.")
        self.settings = settings

    def build_message(self, member_email: str, receipt: Receipt) -> EmailMessage:
        gym = self.settings.gym_name
        msg = EmailMessage()
        msg["From"] = f'"{gym}" <{self.settings.smtp_sender}>'
        msg["To"] = member_email
        msg["Subject"] = f"Payment Receipt - Welcome to {gym}!"
        msg.set_content(render_receipt(receipt, gym))
        return msg

    def send_receipt(self, member_email: str, receipt: Receipt) -> bool:
        s = self.settings
        msg = self.build_message(member_email, receipt)
        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as server:
                if s.smtp_use_tls:
                    server.starttls()
                if s.smtp_user and s.smtp_password:
                    server.login(s.smtp_user, s.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Could not send receipt {receipt.receipt_id}: {exc}") from exc
        logger.info("Sent receipt %s to %s", receipt.receipt_id, member_email)
        return True


def build_notifier(settings: Settings) -> Notifier:
    if settings.smtp_host and settings.smtp_sender:
        return SmtpNotifier(settings)
    return NullNotifier()
