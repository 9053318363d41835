#!/usr/bin/env python
"""
不正検知システム - スクリーンショットの取引日付チェック

主要機能:
1. 取引日付の解析（ISO / 英語月名 / DD/MM/YYYY / クメール数字・月名）
2. 日付の妥当性判定（欠落・解析不能・未来日付・古いスクリーンショット）
3. 取引IDの重複利用検知
4. 不正アラートの作成と判定の格下げ（FRAUD_PENDING / rejected）
"""

import logging
import math
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from typing import Callable, List, Optional

from payment_models import (
    FraudAlert,
    FraudType,
    PaymentLabel,
    PaymentRecord,
    RecognizedPayment,
    Severity,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

MIN_VALID_YEAR = 2020

ENGLISH_MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "aug": 8,
    "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}

KHMER_MONTHS = {
    "មករា": 1, "កុម្ភៈ": 2, "មីនា": 3, "មេសា": 4, "ឧសភា": 5, "មិថុនា": 6,
    "កក្កដា": 7, "សីហា": 8, "កញ្ញា": 9, "តុលា": 10, "វិច្ឆិកា": 11, "ធ្នូ": 12,
}

KHMER_DIGITS = str.maketrans("០១២៣៤៥៦៧៨៩", "0123456789")

SEVERITY_BY_TYPE = {
    FraudType.OLD_SCREENSHOT: Severity.HIGH,
    FraudType.DUPLICATE_TRANSACTION: Severity.CRITICAL,
}


def _build(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> Optional[datetime]:
    if year < MIN_VALID_YEAR:
        return None
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


def _time_of(text: Optional[str]):
    if not text:
        return 0, 0
    m = re.search(r"(\d{1,2}):(\d{2})", text)
    if not m:
        return 0, 0
    return int(m.group(1)), int(m.group(2))


def _khmer_to_latin(text: str) -> str:
    s = text.translate(KHMER_DIGITS)
    for name, month in KHMER_MONTHS.items():
        s = s.replace(name, f" {month:02d}/")
    return s


def parse_transaction_date(text: Optional[str]) -> Optional[datetime]:
    """取引日付文字列を datetime に変換する。解析できなければ None"""
    if not text:
        return None
    s = text.strip()

    # 1. ISO形式（認識サービスの標準出力）
    iso = re.match(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ](\d{2}):(\d{2})(?::(\d{2}))?)?", s)
    if iso:
        y, mo, d = int(iso.group(1)), int(iso.group(2)), int(iso.group(3))
        h, mi, sec = (int(iso.group(i) or 0) for i in (4, 5, 6))
        parsed = _build(y, mo, d, h, mi, sec)
        if parsed and re.search(r"(Z|[+-]\d{2}:?\d{2})$", s):
            try:
                aware = datetime.fromisoformat(s.replace("Z", "+00:00"))
                return aware
            except ValueError:
                return parsed
        return parsed

    # クメール数字・月名を変換
    if re.search(r"[ក-៿]", s):
        s = _khmer_to_latin(s)
        khmer = re.search(r"(\d{1,2})\s+(\d{2})/\s*(\d{4})", s)
        if khmer:
            hour, minute = _time_of(s[khmer.end():])
            return _build(int(khmer.group(3)), int(khmer.group(2)), int(khmer.group(1)), hour, minute)

    # 2. "8 January 2026 | 10:04"
    date_part, _, time_part = s.partition("|")
    named = re.search(r"(\d{1,2})\s+([A-Za-z]+)\.?,?\s+(\d{4})", date_part)
    if named:
        month = ENGLISH_MONTHS.get(named.group(2).lower())
        if month:
            hour, minute = _time_of(time_part or date_part[named.end():])
            return _build(int(named.group(3)), month, int(named.group(1)), hour, minute)

    # 3. DD/MM/YYYY（月が12を超える場合は入れ替え）
    numeric = re.search(r"(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})", date_part)
    if numeric:
        day, month, year = int(numeric.group(1)), int(numeric.group(2)), int(numeric.group(3))
        if month > 12 and day <= 12:
            day, month = month, day
        hour, minute = _time_of(time_part or date_part[numeric.end():])
        return _build(year, month, day, hour, minute)

    return None


@dataclass
class DateValidation:
    is_valid: bool
    fraud_type: Optional[FraudType] = None
    age_days: Optional[int] = None
    parsed_date: Optional[datetime] = None
    reason: Optional[str] = None


def validate_transaction_date(claimed: Optional[str], uploaded_at: datetime, max_age_days: int = 7,
                              local_tz: Optional[tzinfo] = None) -> DateValidation:
    """取引日付を検証する

    Args:
        claimed: 認識結果の取引日付文字列
        uploaded_at: スクリーンショットの投稿時刻
        max_age_days: 許容する経過日数
        local_tz: タイムゾーンなしの日付を解釈するタイムゾーン（None なら uploaded_at と同じ）

    Returns:
        DateValidation: 未来日付の場合 age_days は負（未来の日数）
    """
    if not claimed or claimed.strip().lower() in ("null", "none", "undefined"):
        return DateValidation(False, FraudType.MISSING_DATE, reason="Transaction date not found in screenshot")

    parsed = parse_transaction_date(claimed)
    if parsed is None:
        return DateValidation(False, FraudType.INVALID_DATE, reason=f"Invalid date format: {claimed}")

    # タイムゾーンを揃える
    if parsed.tzinfo is None and uploaded_at.tzinfo is not None:
        parsed = parsed.replace(tzinfo=local_tz or uploaded_at.tzinfo)
    elif parsed.tzinfo is not None and uploaded_at.tzinfo is None:
        parsed = parsed.astimezone(local_tz or timezone.utc).replace(tzinfo=None)

    delta_days = (uploaded_at - parsed).total_seconds() / 86400

    if delta_days < 0:
        future_days = math.ceil(-delta_days)
        return DateValidation(False, FraudType.FUTURE_DATE, age_days=-future_days, parsed_date=parsed,
                              reason=f"Transaction date is {future_days} days in the future")

    age_days = math.floor(delta_days)
    if delta_days > max_age_days:
        return DateValidation(False, FraudType.OLD_SCREENSHOT, age_days=age_days, parsed_date=parsed,
                              reason=f"Screenshot is {age_days} days old (max allowed: {max_age_days} days)")

    return DateValidation(True, age_days=age_days, parsed_date=parsed)


def new_alert_id(now: datetime) -> str:
    return f"FA-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


@dataclass
class FraudScreening:
    """不正チェックの結果。alerts が空なら判定は変更しない"""
    date_validation: Optional[DateValidation] = None
    alerts: List[FraudAlert] = field(default_factory=list)

    @property
    def is_fraud(self) -> bool:
        return bool(self.alerts)

    @property
    def primary_fraud_type(self) -> Optional[FraudType]:
        return self.alerts[0].fraud_type if self.alerts else None

    def apply(self, record: PaymentRecord) -> PaymentRecord:
        """不正があれば FRAUD_PENDING / rejected に格下げする（格上げはしない）"""
        if not self.alerts:
            return record
        reasons = " | ".join(f"FRAUD: {a.reason} | Alert: {a.alert_id}" for a in self.alerts)
        return replace(
            record,
            payment_label=PaymentLabel.FRAUD_PENDING,
            verification_status=VerificationStatus.REJECTED,
            is_verified=False,
            fraud_flag=True,
            verification_notes=f"{record.verification_notes} | {reasons}",
            rejection_reason=self.primary_fraud_type.value,
        )


class FraudDetector:
    """取引日付と取引IDの不正チェック"""

    def __init__(
        self,
        max_age_days: int = 7,
        local_tz: Optional[tzinfo] = None,
        duplicate_lookup: Optional[Callable[[str], Optional[PaymentRecord]]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Args:
            duplicate_lookup: 取引IDから既存の PAID/PENDING 記録を探す関数（None で重複チェック無効）
        """
        self.max_age_days = max_age_days
        self.local_tz = local_tz
        self.duplicate_lookup = duplicate_lookup
        self._clock = clock

    def _alert(self, fraud_type: FraudType, reason: str, record_id: str, customer_ref: str,
               recognized: RecognizedPayment, age_days: Optional[int] = None) -> FraudAlert:
        now = self._clock()
        return FraudAlert(
            alert_id=new_alert_id(now),
            fraud_type=fraud_type,
            severity=SEVERITY_BY_TYPE.get(fraud_type, Severity.MEDIUM),
            payment_record_ref=record_id,
            customer_ref=customer_ref,
            detected_at=now,
            reason=reason,
            age_days=age_days,
            transaction_date_claim=recognized.transaction_date_claim,
            transaction_id=recognized.transaction_id,
        )

    def screen(self, recognized: RecognizedPayment, uploaded_at: datetime,
               customer_ref: str, record_id: str) -> FraudScreening:
        validation = validate_transaction_date(
            recognized.transaction_date_claim, uploaded_at, self.max_age_days, self.local_tz
        )
        screening = FraudScreening(date_validation=validation)

        if not validation.is_valid:
            logger.warning("🚨 不正検知: %s | %s | 顧客 %s", validation.fraud_type.value, validation.reason, customer_ref)
            screening.alerts.append(self._alert(
                validation.fraud_type, validation.reason, record_id, customer_ref, recognized, validation.age_days
            ))

        if self.duplicate_lookup and recognized.transaction_id:
            existing = self.duplicate_lookup(recognized.transaction_id)
            if existing is not None:
                reason = f"Duplicate transaction {recognized.transaction_id} already used by {existing.customer_ref}"
                logger.warning("🚨 取引IDの重複: %s | 顧客 %s", recognized.transaction_id, customer_ref)
                screening.alerts.append(self._alert(
                    FraudType.DUPLICATE_TRANSACTION, reason, record_id, customer_ref, recognized
                ))

        return screening

    def file_alerts(self, screening: FraudScreening, store, notifier=None) -> List[str]:
        """アラートを保存し、レビュー用の通知を依頼する"""
        alert_ids = []
        for alert in screening.alerts:
            store.insert_fraud_alert(alert)
            alert_ids.append(alert.alert_id)
            logger.warning("🚨 不正アラート記録: %s - %s | 顧客 %s", alert.alert_id, alert.fraud_type.value, alert.customer_ref)
            if notifier is not None:
                notifier.send_fraud_alert(alert)
        return alert_ids
