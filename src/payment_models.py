import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PaymentLabel(str, Enum):
    PAID = "PAID"
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    FRAUD_PENDING = "FRAUD_PENDING"


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"
    PENDING = "pending"


class FraudType(str, Enum):
    MISSING_DATE = "MISSING_DATE"
    INVALID_DATE = "INVALID_DATE"
    FUTURE_DATE = "FUTURE_DATE"
    OLD_SCREENSHOT = "OLD_SCREENSHOT"
    DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"


class Severity(str, Enum):
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED_FRAUD = "CONFIRMED_FRAUD"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    APPROVED = "APPROVED"


class PaymentStatus(str, Enum):
    NOT_PAID = "NOT_PAID"
    PARTIAL_PAID = "PARTIAL_PAID"
    FULLY_PAID = "FULLY_PAID"
    OVERPAID = "OVERPAID"


# ラベル → 検証ステータス（不正判定による上書き前）
LABEL_TO_STATUS = {
    PaymentLabel.PAID: VerificationStatus.VERIFIED,
    PaymentLabel.PENDING: VerificationStatus.PENDING,
    PaymentLabel.UNPAID: VerificationStatus.REJECTED,
    PaymentLabel.FRAUD_PENDING: VerificationStatus.REJECTED,
}


@dataclass(frozen=True)
class PaymentEvidenceEvent:
    """チャットから届いた支払い証明（画像＋メタデータ）。1回だけ処理される"""
    event_id: str
    customer_ref: str
    submitted_at: datetime
    image_ref: str

    @classmethod
    def new(cls, customer_ref: str, image_ref: str, submitted_at: datetime) -> "PaymentEvidenceEvent":
        return cls(str(uuid.uuid4()), str(customer_ref), submitted_at, image_ref)


@dataclass
class RecognizedPayment:
    """認識サービスの抽出結果（信頼できない外部データ）

    parse_failed=True は構造化に失敗した劣化結果。raw_text は監査用に保持する。
    """
    is_claimed_payment: bool
    amount: Optional[float] = None
    currency: Optional[str] = None
    transaction_id: Optional[str] = None
    reference_number: Optional[str] = None
    from_account: Optional[str] = None
    to_account: Optional[str] = None
    bank_name: Optional[str] = None
    transaction_date_claim: Optional[str] = None
    confidence_level: Confidence = Confidence.LOW
    is_payment_evidence: Optional[bool] = None
    parse_failed: bool = False
    raw_text: Optional[str] = None

    @classmethod
    def parse_failure(cls, raw_text: Optional[str]) -> "RecognizedPayment":
        return cls(
            is_claimed_payment=False,
            confidence_level=Confidence.LOW,
            parse_failed=True,
            raw_text=raw_text,
        )


@dataclass(frozen=True)
class ExpectedAmountRecord:
    customer_ref: str
    expected_amount_base: float


@dataclass(frozen=True)
class PaymentRecord:
    """イベントごとに1件だけ作られる支払い記録。作成後は更新しない"""
    record_id: str
    customer_ref: str
    evidence_ref: str
    payment_label: PaymentLabel
    verification_status: VerificationStatus
    amount_in_base: Optional[float]
    is_verified: bool
    verification_notes: str
    confidence_level: Confidence
    fraud_flag: bool
    created_at: datetime
    transaction_id: Optional[str] = None
    rejection_reason: Optional[str] = None


@dataclass
class FraudAlert:
    alert_id: str
    fraud_type: FraudType
    severity: Severity
    payment_record_ref: str
    customer_ref: str
    detected_at: datetime
    reason: str = ""
    age_days: Optional[int] = None
    transaction_date_claim: Optional[str] = None
    transaction_id: Optional[str] = None
    review_status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None


@dataclass
class CustomerLedger:
    customer_ref: str
    total_expected: float
    total_paid: float
    total_unverified: float
    payment_count: int
    payment_status: PaymentStatus
    remaining_balance: float
    excess_amount: float
    first_payment_date: Optional[datetime]
    last_payment_date: Optional[datetime]
    last_updated: datetime
    payment_ids: list[str] = field(default_factory=list)
