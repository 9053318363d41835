"""
顧客ごとの支払い台帳の再計算

台帳は支払い記録から毎回すべて集計し直す（加算カウンターは使わない）。
同じ記録集合からは同じ台帳が得られるため、再処理しても値がずれない。
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, List

from payment_models import (
    CustomerLedger,
    PaymentLabel,
    PaymentStatus,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


def derive_payment_status(total_paid: float, total_expected: float) -> PaymentStatus:
    if total_paid == 0:
        return PaymentStatus.NOT_PAID
    if total_paid == total_expected:
        return PaymentStatus.FULLY_PAID
    if total_paid > total_expected:
        return PaymentStatus.OVERPAID
    return PaymentStatus.PARTIAL_PAID


class LedgerAggregator:
    """台帳の唯一の書き手"""

    def __init__(self, store, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self._clock = clock

    def recompute(self, customer_ref: str) -> CustomerLedger:
        expected = self.store.get_expected_amount(customer_ref)
        total_expected = float(expected.expected_amount_base) if expected else 0.0

        records = self.store.list_payment_records(
            customer_ref, verification_statuses=(VerificationStatus.VERIFIED, VerificationStatus.PENDING)
        )
        paid = sorted(
            (r for r in records if r.is_verified and r.payment_label is PaymentLabel.PAID),
            key=lambda r: (r.created_at, r.record_id),
        )
        pending = [r for r in records if r.payment_label is PaymentLabel.PENDING]

        total_paid = float(sum(r.amount_in_base or 0 for r in paid))
        total_unverified = float(sum(r.amount_in_base or 0 for r in pending))
        status = derive_payment_status(total_paid, total_expected)

        ledger = CustomerLedger(
            customer_ref=str(customer_ref),
            total_expected=total_expected,
            total_paid=total_paid,
            total_unverified=total_unverified,
            payment_count=len(paid),
            payment_status=status,
            remaining_balance=total_expected - total_paid,
            excess_amount=total_paid - total_expected if status is PaymentStatus.OVERPAID else 0.0,
            first_payment_date=paid[0].created_at if paid else None,
            last_payment_date=paid[-1].created_at if paid else None,
            last_updated=self._clock(),
            payment_ids=[r.record_id for r in paid],
        )
        self.store.upsert_customer_ledger(ledger)
        logger.info(
            "📊 台帳更新: %s %s | 支払済 %s / 請求 %s",
            customer_ref, status.value, format_amount(total_paid), format_amount(total_expected),
        )
        return ledger

    def customers_by_status(self, status: PaymentStatus) -> List[CustomerLedger]:
        return self.store.list_ledgers_by_status(status)

    def overdue_customers(self, days_overdue: int = 3) -> List[CustomerLedger]:
        """未払い・一部払いのまま days_overdue 日以上更新がない顧客"""
        cutoff = self._clock() - timedelta(days=days_overdue)
        return self.store.list_stale_ledgers((PaymentStatus.NOT_PAID, PaymentStatus.PARTIAL_PAID), cutoff)


def format_amount(amount) -> str:
    if not amount or not math.isfinite(amount):
        return "0"
    return f"{round(amount):,}"
