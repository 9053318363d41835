#!/usr/bin/env python
"""
支払いリマインダー送信スクリプト
未払い・一部払いのまま期限を過ぎた顧客に Telegram でリマインダーを送る（cron から定期実行する想定）
"""

import argparse
import logging
import os
import sys

# srcディレクトリをパスに追加
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from config_loader import load_pipeline_config
from ledger import LedgerAggregator
from notifier import TelegramNotifier
from payment_reminders import send_payment_reminders
from state_store import PaymentStateStore


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Send payment reminders to overdue customers")
    parser.add_argument("--config", help="path to payment_verification.yml")
    parser.add_argument("--days", type=int, help="override PENDING_WARNING_DAYS")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_pipeline_config(args.config)
    store = PaymentStateStore(config.state_db_path)
    store.init_db()

    warning_days = args.days or config.reminder_warning_days
    print(f"🔍 {warning_days}日以上未払いの顧客を確認します")
    sent = send_payment_reminders(
        LedgerAggregator(store), store, TelegramNotifier(), warning_days, config.base_currency
    )
    print(f"✅ リマインダー送信: {len(sent)}件")
    return 0


if __name__ == "__main__":
    sys.exit(main())
