#!/usr/bin/env python
"""
支払いリマインダー送信

未払い・一部払いのまま pending_warning_days 日以上台帳が更新されていない顧客に
リマインダーを送る。同じ顧客には24時間以内に再送しない。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List

from ledger import LedgerAggregator
from payment_models import PaymentStatus

logger = logging.getLogger(__name__)

RESEND_INTERVAL = timedelta(days=1)

REMINDER_TYPES = {
    PaymentStatus.NOT_PAID: "UNPAID",
    PaymentStatus.PARTIAL_PAID: "PARTIAL_OVERDUE",
}


def send_payment_reminders(
    ledger: LedgerAggregator,
    store,
    notifier,
    warning_days: int = 5,
    currency: str = "KHR",
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> List[str]:
    """期限を過ぎた顧客にリマインダーを送り、送信できた顧客の一覧を返す"""
    now = clock()
    sent = []

    for customer in ledger.overdue_customers(days_overdue=warning_days):
        if customer.total_expected <= 0:
            # 請求額がない顧客には送らない
            continue

        last = store.last_reminder_at(customer.customer_ref)
        if last is not None and now - last < RESEND_INTERVAL:
            logger.info("⏭️ 本日送信済みのためスキップ: 顧客 %s", customer.customer_ref)
            continue

        days_overdue = (now - customer.last_updated).days
        if not notifier.send_payment_reminder(customer, days_overdue, currency):
            logger.warning("⚠️ リマインダー送信失敗: 顧客 %s", customer.customer_ref)
            continue

        reminder_type = REMINDER_TYPES[customer.payment_status]
        store.record_reminder(customer.customer_ref, reminder_type, customer.remaining_balance, now)
        store.write_audit("INFO", "reminders", "send_payment_reminder", [customer.customer_ref], reminder_type)
        logger.info("🔔 リマインダー送信: 顧客 %s (%s, %d日)", customer.customer_ref, reminder_type, days_overdue)
        sent.append(customer.customer_ref)

    logger.info("✅ リマインダー確認完了: %d件送信", len(sent))
    return sent
