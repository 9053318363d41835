import logging
import os
from typing import Optional

import requests

from ledger import format_amount
from payment_models import CustomerLedger, FraudAlert, FraudType, PaymentLabel, PaymentRecord, PaymentStatus
from verifier import (
    REASON_AMOUNT_MISMATCH,
    REASON_CANNOT_VERIFY,
    REASON_LOW_CONFIDENCE,
    REASON_NOT_PAYMENT,
    REASON_WRONG_RECIPIENT,
    VerificationResult,
)

logger = logging.getLogger(__name__)


def build_customer_message(record: PaymentRecord, verdict: VerificationResult,
                           ledger: Optional[CustomerLedger] = None, currency: str = "KHR") -> Optional[str]:
    """顧客への返信文を作る。支払い証明でない画像は None（通知しない）"""
    paid = format_amount(record.amount_in_base)
    expected = format_amount(verdict.expected_amount)

    if record.payment_label is PaymentLabel.FRAUD_PENDING:
        if record.rejection_reason == FraudType.DUPLICATE_TRANSACTION.value:
            return "❌ This receipt has already been used. Please send a different receipt."
        if record.rejection_reason == FraudType.OLD_SCREENSHOT.value:
            return "❌ Screenshot too old. Please send a recent receipt."
        return "⏳ The transaction date on this receipt could not be confirmed. It is held for manual review."

    if verdict.reason == REASON_NOT_PAYMENT:
        return None

    if record.payment_label is PaymentLabel.PAID:
        lines = [
            "✅ Payment confirmed ✅",
            f"💰 Received: {paid} {currency}",
            f"📋 Amount due: {expected} {currency}",
        ]
        if verdict.expected_amount and record.amount_in_base and record.amount_in_base > verdict.expected_amount:
            lines.append(f"💵 Over by: {format_amount(record.amount_in_base - verdict.expected_amount)} {currency}")
        if ledger is not None and ledger.remaining_balance > 0:
            lines.append(f"📌 Remaining balance: {format_amount(ledger.remaining_balance)} {currency}")
        lines.append("Thank you! 🙏")
        return "\n".join(lines)

    if verdict.reason == REASON_LOW_CONFIDENCE:
        return "⏳ Image unclear. Your payment is pending manual review; a clearer photo will speed this up."
    if verdict.reason == REASON_WRONG_RECIPIENT:
        return "❌ Wrong account. Please transfer to the correct account."
    if verdict.reason == REASON_AMOUNT_MISMATCH:
        return f"⏳ Received {paid} {currency}. Amount due is {expected} {currency} - under review."
    if verdict.reason == REASON_CANNOT_VERIFY:
        return f"⏳ Received {paid} {currency}. Pending manual review."
    return "⏳ Pending manual review."


def build_reminder_message(ledger: CustomerLedger, days_overdue: int, currency: str = "KHR") -> str:
    expected = format_amount(ledger.total_expected)
    if ledger.payment_status is PaymentStatus.NOT_PAID:
        return (
            f"🔔 Payment reminder: your bill of {expected} {currency} is still unpaid.\n"
            "Please send the payment screenshot here once you have paid. Thank you! 🙏"
        )
    return (
        f"🔔 Payment reminder: we received {format_amount(ledger.total_paid)} of {expected} {currency}.\n"
        f"📌 Remaining balance: {format_amount(ledger.remaining_balance)} {currency} (open for {days_overdue} days).\n"
        "Please complete the payment. Thank you! 🙏"
    )


class TelegramNotifier:
    """Telegram Bot API 通知クライアント"""

    def __init__(self, bot_token: Optional[str] = None, review_chat_id: Optional[str] = None,
                 api_base: str = "https://api.telegram.org", timeout: float = 10.0):
        self.bot_token = bot_token or os.getenv("TELEGRAM_TOKEN")
        self.review_chat_id = review_chat_id or os.getenv("PENDING_CHAT_ID")
        self.api_base = api_base
        self.timeout = timeout

    def send_message(self, chat_id: str, text: str) -> bool:
        if not self.bot_token:
            logger.warning("⚠️ TELEGRAM_TOKEN未設定 - 通知をスキップ: chat %s", chat_id)
            return False

        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        try:
            response = requests.post(url, json={"chat_id": chat_id, "text": text}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("❌ Telegram送信エラー: chat %s: %s", chat_id, e)
            return False

        if not data.get("ok"):
            logger.error("❌ Telegram API エラー: %s", data.get("description"))
            return False
        logger.info("📤 メッセージ送信: chat %s", chat_id)
        return True

    def notify_customer(self, customer_ref: str, text: str) -> bool:
        return self.send_message(customer_ref, text)

    def send_fraud_alert(self, alert: FraudAlert) -> bool:
        if not self.review_chat_id:
            return False
        text = (
            f"🚨 FRAUD ALERT {alert.alert_id}\n"
            f"Type: {alert.fraud_type.value} ({alert.severity.value})\n"
            f"Customer: {alert.customer_ref}\n"
            f"Payment record: {alert.payment_record_ref}\n"
            f"Claimed date: {alert.transaction_date_claim or 'N/A'}\n"
            f"Reason: {alert.reason}"
        )
        return self.send_message(self.review_chat_id, text)

    def send_pending_review(self, record: PaymentRecord, ledger: Optional[CustomerLedger],
                            expected_amount: Optional[float], currency: str = "KHR") -> bool:
        if not self.review_chat_id:
            return False
        total_paid = ledger.total_paid if ledger else 0
        remaining = expected_amount - total_paid if expected_amount else None
        text = (
            "🔍 PENDING REVIEW\n\n"
            f"Customer: {record.customer_ref}\n"
            f"This payment: {format_amount(record.amount_in_base)} {currency}\n"
            f"Total expected: {format_amount(expected_amount) if expected_amount else 'N/A'} {currency}\n"
            f"Already paid: {format_amount(total_paid)} {currency}\n"
            f"Remaining: {format_amount(remaining) if remaining is not None else 'N/A'} {currency}\n"
            f"Reason: {record.rejection_reason or 'Amount mismatch'}\n"
            f"Evidence: {record.evidence_ref}"
        )
        return self.send_message(self.review_chat_id, text)

    def send_payment_reminder(self, ledger: CustomerLedger, days_overdue: int, currency: str = "KHR") -> bool:
        return self.send_message(ledger.customer_ref, build_reminder_message(ledger, days_overdue, currency))
