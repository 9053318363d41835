import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from payment_models import Confidence, ExpectedAmountRecord, PaymentLabel, RecognizedPayment


class CurrencyKind(Enum):
    BASE = "base"
    FOREIGN = "foreign"
    UNKNOWN = "unknown"


BASE_CURRENCY_ALIASES = {"KHR", "RIEL", "RIELS", "KHMER RIEL", "៛"}

# 照合結果の理由コード（通知文の選択に使う）
REASON_VERIFIED = "VERIFIED"
REASON_NOT_PAYMENT = "NOT_PAYMENT"
REASON_LOW_CONFIDENCE = "LOW_CONFIDENCE"
REASON_CANNOT_VERIFY = "CANNOT_VERIFY"
REASON_AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
REASON_WRONG_RECIPIENT = "WRONG_RECIPIENT"


def classify_currency(code: Optional[str], base_currency: str = "KHR", foreign_currency: str = "USD") -> CurrencyKind:
    if not code:
        return CurrencyKind.UNKNOWN
    c = code.strip().upper()
    if c == base_currency.upper() or c in BASE_CURRENCY_ALIASES:
        return CurrencyKind.BASE
    if c == foreign_currency.upper():
        return CurrencyKind.FOREIGN
    return CurrencyKind.UNKNOWN


def convert_to_base(amount: Optional[float], currency: Optional[str], exchange_rate: float,
                    base_currency: str = "KHR", foreign_currency: str = "USD") -> Optional[float]:
    """外貨のみ固定レートで換算する。未知の通貨は基準通貨とみなしてそのまま返す"""
    if not amount or not math.isfinite(amount):
        return None
    if classify_currency(currency, base_currency, foreign_currency) is CurrencyKind.FOREIGN:
        converted = amount * exchange_rate
        return converted if math.isfinite(converted) else None
    return amount


def normalize_account(text: Optional[str]) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", "", text)


def tolerance_window(expected: float, tolerance_percent: float) -> Tuple[float, float]:
    delta = expected * tolerance_percent / 100
    return expected - delta, expected + delta


def _plain(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def _within_tolerance(amount: float, expected: float, tolerance_percent: float) -> bool:
    low, high = tolerance_window(expected, tolerance_percent)
    return low <= amount <= high


def decide_label(is_verified: bool, recognized: RecognizedPayment) -> PaymentLabel:
    if is_verified and recognized.confidence_level is Confidence.HIGH and recognized.is_claimed_payment:
        return PaymentLabel.PAID
    if not recognized.is_claimed_payment or recognized.confidence_level is Confidence.LOW:
        return PaymentLabel.UNPAID
    return PaymentLabel.PENDING


@dataclass
class VerificationResult:
    is_verified: bool
    notes: str
    label: PaymentLabel
    amount_in_base: Optional[float]
    expected_amount: Optional[float]
    reason: str


class VerificationEngine:
    """認識結果を請求額・受取口座と照合する"""

    def __init__(self, exchange_rate: float = 4000.0, tolerance_percent: float = 5.0,
                 required_recipient_account: str = "", base_currency: str = "KHR",
                 foreign_currency: str = "USD"):
        self.exchange_rate = exchange_rate
        self.tolerance_percent = tolerance_percent
        self.required_recipient_account = normalize_account(required_recipient_account)
        self.base_currency = base_currency
        self.foreign_currency = foreign_currency

    @classmethod
    def from_config(cls, config) -> "VerificationEngine":
        return cls(
            exchange_rate=config.exchange_rate,
            tolerance_percent=config.tolerance_percent,
            required_recipient_account=config.required_recipient_account,
            base_currency=config.base_currency,
            foreign_currency=config.foreign_currency,
        )

    def verify(self, recognized: RecognizedPayment, expected: Optional[ExpectedAmountRecord]) -> VerificationResult:
        amount = convert_to_base(recognized.amount, recognized.currency, self.exchange_rate,
                                 self.base_currency, self.foreign_currency)
        expected_amount = expected.expected_amount_base if expected and expected.expected_amount_base else None
        base = self.base_currency

        if expected_amount and amount:
            is_verified = _within_tolerance(amount, expected_amount, self.tolerance_percent)
            if is_verified:
                notes = f"Amount verified within {self.tolerance_percent:g}% tolerance"
                reason = REASON_VERIFIED
            else:
                notes = f"Amount mismatch: Expected {_plain(expected_amount)} {base}, got {_plain(amount)} {base}"
                reason = REASON_AMOUNT_MISMATCH
        else:
            is_verified = False
            notes = "Cannot verify - missing expected amount or extracted amount"
            reason = REASON_CANNOT_VERIFY

        # 受取口座チェック（設定時かつ口座が読み取れた場合のみ）
        recognized_account = normalize_account(recognized.to_account)
        if self.required_recipient_account and recognized_account:
            if recognized_account != self.required_recipient_account:
                is_verified = False
                notes += f" | Recipient mismatch: expected {self.required_recipient_account}, got {recognized_account}"
                reason = REASON_WRONG_RECIPIENT

        label = decide_label(is_verified, recognized)
        if recognized.is_payment_evidence is False:
            reason = REASON_NOT_PAYMENT
        elif recognized.parse_failed or (
            label is not PaymentLabel.PAID and recognized.confidence_level is not Confidence.HIGH
        ):
            reason = REASON_LOW_CONFIDENCE

        return VerificationResult(
            is_verified=is_verified,
            notes=notes,
            label=label,
            amount_in_base=amount,
            expected_amount=expected_amount,
            reason=reason,
        )
