#!/usr/bin/env python
"""
支払いスクリーンショット一括検証スクリプト
ディレクトリ内の画像を1顧客分のイベントとしてキューに投入し、処理後の台帳を表示する
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

# srcディレクトリをパスに追加
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from billing_importer import import_expected_amounts
from config_loader import load_pipeline_config
from payment_models import PaymentEvidenceEvent
from payment_pipeline import build_ingestion_queue, build_pipeline

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Verify payment screenshots for one customer")
    parser.add_argument("image_dir", help="directory containing payment screenshots")
    parser.add_argument("--customer", required=True, help="customer reference (chat id)")
    parser.add_argument("--billing-csv", help="billing sheet with expected amounts to import first")
    parser.add_argument("--config", help="path to payment_verification.yml")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_pipeline_config(args.config)
    pipeline = build_pipeline(config)
    if args.billing_csv:
        import_expected_amounts(args.billing_csv, pipeline.store)

    images = sorted(p for p in Path(args.image_dir).iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
    if not images:
        print(f"⚠️ 画像が見つかりません: {args.image_dir}")
        return 1

    queue = build_ingestion_queue(pipeline, config)
    for image in images:
        queue.accept(PaymentEvidenceEvent.new(args.customer, str(image), datetime.now(timezone.utc)))

    queue.start()
    queue.join()
    queue.stop()
    pipeline.recognizer.close()

    print(f"✅ 処理完了: {queue.processed_count}件 / 失敗 {queue.failed_count}件")
    ledger = pipeline.store.get_customer_ledger(args.customer)
    if ledger:
        print(json.dumps(asdict(ledger), default=str, ensure_ascii=False, indent=2))
    return 0 if queue.failed_count == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
