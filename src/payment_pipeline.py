#!/usr/bin/env python
"""
支払い証明の検証パイプライン

イベント → (レート制限付き)認識 → 金額照合 → 不正チェック → 記録保存 → 台帳再計算 → 通知
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from config_loader import PipelineConfig
from fraud_detector import FraudDetector, FraudScreening
from ingestion_queue import IngestionQueue
from ledger import LedgerAggregator
from notifier import TelegramNotifier, build_customer_message
from payment_models import (
    LABEL_TO_STATUS,
    CustomerLedger,
    PaymentEvidenceEvent,
    PaymentRecord,
    RecognizedPayment,
    VerificationStatus,
)
from rate_limiter import SlidingWindowRateLimiter
from recognition_client import ClaudeVisionClient, RecognitionAdapter
from state_store import PaymentStateStore
from verifier import REASON_VERIFIED, VerificationEngine, VerificationResult

logger = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    event_id: str
    record: PaymentRecord
    verdict: VerificationResult
    screening: FraudScreening
    ledger: CustomerLedger
    alert_ids: List[str]
    customer_message: Optional[str] = None
    notified: bool = False


def should_screen(recognized: RecognizedPayment) -> bool:
    """支払い証明でない画像（通知しない終端）だけは日付チェックの対象外"""
    return recognized.is_payment_evidence is not False


class PaymentVerificationPipeline:
    """1イベント分の処理を最後まで実行する"""

    def __init__(
        self,
        store,
        recognizer,
        verifier: VerificationEngine,
        fraud_detector: FraudDetector,
        ledger: LedgerAggregator,
        notifier=None,
        base_currency: str = "KHR",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.recognizer = recognizer
        self.verifier = verifier
        self.fraud_detector = fraud_detector
        self.ledger = ledger
        self.notifier = notifier
        self.base_currency = base_currency
        self._clock = clock

    def _build_record(self, event: PaymentEvidenceEvent, recognized: RecognizedPayment,
                      verdict: VerificationResult) -> PaymentRecord:
        return PaymentRecord(
            record_id=str(uuid.uuid4()),
            customer_ref=event.customer_ref,
            evidence_ref=event.image_ref,
            payment_label=verdict.label,
            verification_status=LABEL_TO_STATUS[verdict.label],
            amount_in_base=verdict.amount_in_base,
            is_verified=verdict.is_verified,
            verification_notes=verdict.notes,
            confidence_level=recognized.confidence_level,
            fraud_flag=False,
            created_at=self._clock(),
            transaction_id=recognized.transaction_id,
            rejection_reason=None if verdict.reason == REASON_VERIFIED else verdict.reason,
        )

    def process_event(self, event: PaymentEvidenceEvent) -> PipelineOutcome:
        expected = self.store.get_expected_amount(event.customer_ref)

        # RecognitionTimeout はここから伝播し、このイベントは失敗扱い
        recognized = self.recognizer.analyze(event.image_ref)
        verdict = self.verifier.verify(recognized, expected)
        record = self._build_record(event, recognized, verdict)

        if should_screen(recognized):
            screening = self.fraud_detector.screen(recognized, event.submitted_at, event.customer_ref, record.record_id)
            record = screening.apply(record)
        else:
            screening = FraudScreening()

        logger.info(
            "🧾 判定: %s / %s | 顧客 %s | %s",
            record.payment_label.value, record.verification_status.value, event.customer_ref, record.verification_notes,
        )

        # 保存に失敗した場合は台帳再計算を行わずにイベントを中断する
        self.store.insert_payment_record(record)
        alert_ids = self.fraud_detector.file_alerts(screening, self.store, self.notifier)
        ledger = self.ledger.recompute(event.customer_ref)
        self.store.write_audit(
            "INFO", "pipeline", "process_event", [event.event_id, record.record_id, *alert_ids],
            f"{record.payment_label.value}/{ledger.payment_status.value}",
        )

        outcome = PipelineOutcome(
            event_id=event.event_id,
            record=record,
            verdict=verdict,
            screening=screening,
            ledger=ledger,
            alert_ids=alert_ids,
            customer_message=build_customer_message(record, verdict, ledger, self.base_currency),
        )
        self._notify(outcome, expected.expected_amount_base if expected else None)
        return outcome

    def _notify(self, outcome: PipelineOutcome, expected_amount: Optional[float]) -> None:
        if self.notifier is None:
            return
        if outcome.customer_message:
            outcome.notified = self.notifier.notify_customer(outcome.record.customer_ref, outcome.customer_message)
        else:
            logger.info("🔇 支払い証明ではないため通知しません: 顧客 %s", outcome.record.customer_ref)
        if outcome.record.verification_status is VerificationStatus.PENDING:
            self.notifier.send_pending_review(outcome.record, outcome.ledger, expected_amount, self.base_currency)


def build_pipeline(config: PipelineConfig, store=None, notifier=None, recognition_client=None,
                   rate_limiter: Optional[SlidingWindowRateLimiter] = None) -> PaymentVerificationPipeline:
    """設定から本番用の協調オブジェクトを組み立てる"""
    if store is None:
        store = PaymentStateStore(config.state_db_path)
        store.init_db()
    if rate_limiter is None:
        rate_limiter = SlidingWindowRateLimiter(
            max_calls=config.recognition_rate_limit_per_minute,
            window_seconds=60.0,
            min_interval_seconds=config.recognition_min_interval_ms / 1000.0,
        )
    if recognition_client is None:
        recognition_client = ClaudeVisionClient(model=config.recognition_model,
                                                request_timeout=config.recognition_timeout_seconds)
    if notifier is None:
        notifier = TelegramNotifier()

    recognizer = RecognitionAdapter(recognition_client, rate_limiter, timeout_seconds=config.recognition_timeout_seconds)
    duplicate_lookup = store.find_payment_by_transaction_id if config.detect_duplicate_transactions else None
    fraud_detector = FraudDetector(
        max_age_days=config.max_screenshot_age_days,
        local_tz=ZoneInfo(config.local_timezone) if config.local_timezone else None,
        duplicate_lookup=duplicate_lookup,
    )
    return PaymentVerificationPipeline(
        store=store,
        recognizer=recognizer,
        verifier=VerificationEngine.from_config(config),
        fraud_detector=fraud_detector,
        ledger=LedgerAggregator(store),
        notifier=notifier,
        base_currency=config.base_currency,
    )


def build_ingestion_queue(pipeline: PaymentVerificationPipeline, config: PipelineConfig) -> IngestionQueue:
    return IngestionQueue(
        pipeline.process_event,
        max_size=config.queue_max_size,
        idle_delay=config.queue_idle_delay_ms / 1000.0,
    )
