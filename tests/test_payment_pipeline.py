from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from config_loader import load_pipeline_config
from fraud_detector import FraudDetector
from ledger import LedgerAggregator
from payment_models import (
    Confidence,
    ExpectedAmountRecord,
    FraudType,
    PaymentEvidenceEvent,
    PaymentLabel,
    PaymentStatus,
    RecognizedPayment,
    Severity,
    VerificationStatus,
)
from payment_pipeline import PaymentVerificationPipeline, build_ingestion_queue, build_pipeline
from recognition_client import RecognitionAdapter, RecognitionTimeout, parse_recognition_response
from state_store import PersistenceError
from verifier import VerificationEngine

UPLOADED = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)


def _recognized(amount=100000, date="2026-01-19T09:00", confidence=Confidence.HIGH, tx=None, **kwargs):
    return RecognizedPayment(is_claimed_payment=True, amount=amount, currency="KHR", transaction_id=tx,
                             transaction_date_claim=date, confidence_level=confidence,
                             is_payment_evidence=True, **kwargs)


def _event(customer="c1", image="shot.jpg"):
    return PaymentEvidenceEvent.new(customer, image, UPLOADED)


@pytest.fixture
def recognizer():
    return MagicMock()


@pytest.fixture
def notifier():
    n = MagicMock()
    n.notify_customer.return_value = True
    return n


@pytest.fixture
def pipeline(store, recognizer, notifier, datetime_clock):
    store.put_expected_amount(ExpectedAmountRecord("c1", 100000))
    return PaymentVerificationPipeline(
        store=store,
        recognizer=recognizer,
        verifier=VerificationEngine(exchange_rate=4000, tolerance_percent=5),
        fraud_detector=FraudDetector(max_age_days=7, duplicate_lookup=store.find_payment_by_transaction_id,
                                     clock=datetime_clock),
        ledger=LedgerAggregator(store, clock=datetime_clock),
        notifier=notifier,
        clock=datetime_clock,
    )


def test_verified_payment_updates_ledger(pipeline, recognizer, notifier, store):
    recognizer.analyze.return_value = _recognized(98000)

    outcome = pipeline.process_event(_event())

    assert outcome.record.payment_label is PaymentLabel.PAID
    assert outcome.record.verification_status is VerificationStatus.VERIFIED
    assert outcome.ledger.total_paid == 98000
    assert outcome.ledger.payment_status is PaymentStatus.PARTIAL_PAID
    assert outcome.alert_ids == []
    assert store.get_payment_record(outcome.record.record_id) == outcome.record
    notifier.notify_customer.assert_called_once()
    assert notifier.notify_customer.call_args[0][1].startswith("✅ Payment confirmed")
    notifier.send_pending_review.assert_not_called()
    assert outcome.notified


def test_old_screenshot_is_held_as_fraud(pipeline, recognizer, notifier, store):
    recognizer.analyze.return_value = _recognized(100000, date="2026-01-10T12:00")

    outcome = pipeline.process_event(_event())

    record = store.get_payment_record(outcome.record.record_id)
    assert record.payment_label is PaymentLabel.FRAUD_PENDING
    assert record.verification_status is VerificationStatus.REJECTED
    assert record.fraud_flag
    assert not record.is_verified

    [alert] = store.list_fraud_alerts()
    assert alert.fraud_type is FraudType.OLD_SCREENSHOT
    assert alert.severity is Severity.HIGH
    assert alert.age_days == 10
    assert alert.payment_record_ref == record.record_id

    assert outcome.ledger.total_paid == 0
    assert outcome.ledger.payment_status is PaymentStatus.NOT_PAID
    notifier.send_fraud_alert.assert_called_once()
    assert "too old" in outcome.customer_message


def test_partial_payment_goes_to_review(pipeline, recognizer, notifier):
    recognizer.analyze.return_value = _recognized(50000, confidence=Confidence.MEDIUM)

    outcome = pipeline.process_event(_event())

    assert outcome.record.payment_label is PaymentLabel.PENDING
    assert outcome.ledger.total_paid == 0
    assert outcome.ledger.total_unverified == 50000
    notifier.send_pending_review.assert_called_once()


def test_non_payment_image_is_silent(pipeline, recognizer, notifier, store):
    recognizer.analyze.return_value = RecognizedPayment(is_claimed_payment=False, is_payment_evidence=False)

    outcome = pipeline.process_event(_event())

    assert outcome.record.payment_label is PaymentLabel.UNPAID
    assert outcome.customer_message is None
    assert store.list_fraud_alerts() == []
    notifier.notify_customer.assert_not_called()


def test_parse_failure_is_still_screened_and_held_for_review(pipeline, recognizer, store):
    recognizer.analyze.return_value = RecognizedPayment.parse_failure("???")

    outcome = pipeline.process_event(_event())

    assert outcome.record.payment_label is PaymentLabel.FRAUD_PENDING
    assert outcome.record.verification_status is VerificationStatus.REJECTED
    assert outcome.record.confidence_level is Confidence.LOW
    [alert] = store.list_fraud_alerts()
    assert alert.fraud_type is FraudType.MISSING_DATE
    assert alert.severity is Severity.MEDIUM
    assert "held for manual review" in outcome.customer_message


def test_non_finite_amount_degrades_to_cannot_verify(pipeline, recognizer, notifier, store):
    recognizer.analyze.return_value = parse_recognition_response(
        '{"isBankStatement": true, "isPaid": true, "amount": Infinity, "currency": "KHR",'
        ' "transactionDate": "2026-01-19T09:00", "confidence": "high"}'
    )

    outcome = pipeline.process_event(_event())

    assert outcome.record.amount_in_base is None
    assert outcome.record.payment_label is PaymentLabel.PENDING
    assert outcome.verdict.reason == "CANNOT_VERIFY"
    assert outcome.customer_message == "⏳ Received 0 KHR. Pending manual review."
    notifier.notify_customer.assert_called_once()


def test_reused_transaction_id_is_flagged(pipeline, recognizer, store):
    recognizer.analyze.return_value = _recognized(100000, tx="TX-42")
    first = pipeline.process_event(_event())
    recognizer.analyze.return_value = _recognized(100000, tx="TX-42")
    second = pipeline.process_event(_event("c2"))

    assert first.record.payment_label is PaymentLabel.PAID
    assert second.record.payment_label is PaymentLabel.FRAUD_PENDING
    assert second.screening.primary_fraud_type is FraudType.DUPLICATE_TRANSACTION
    assert "already been used" in second.customer_message


def test_recognition_timeout_fails_event_without_record(pipeline, recognizer, store):
    recognizer.analyze.side_effect = RecognitionTimeout("60s")

    with pytest.raises(RecognitionTimeout):
        pipeline.process_event(_event())
    assert store.list_payment_records("c1") == []
    assert store.get_customer_ledger("c1") is None


def test_persistence_failure_skips_ledger(pipeline, recognizer, store):
    recognizer.analyze.return_value = _recognized(100000)
    pipeline.ledger = MagicMock()

    with patch.object(store, "insert_payment_record", side_effect=PersistenceError("disk full")):
        with pytest.raises(PersistenceError):
            pipeline.process_event(_event())
    pipeline.ledger.recompute.assert_not_called()


def test_audit_entry_per_event(pipeline, recognizer, store):
    recognizer.analyze.return_value = _recognized(100000)
    event = _event()
    outcome = pipeline.process_event(event)

    [entry] = store.list_audit("process_event")
    assert entry["target_ids"] == [event.event_id, outcome.record.record_id]
    assert entry["result"] == "PAID/FULLY_PAID"


def test_queue_keeps_running_after_failed_event(pipeline, recognizer, store, tmp_path):
    config = load_pipeline_config(str(tmp_path / "missing.yml"), environ={"BOT_MIN_DELAY_MS": "0"})
    recognizer.analyze.side_effect = [RecognitionTimeout("slow"), _recognized(100000)]
    queue = build_ingestion_queue(pipeline, config)
    queue.accept(_event(image="a.jpg"))
    queue.accept(_event(image="b.jpg"))

    queue.drain()

    assert queue.failed_count == 1
    assert queue.processed_count == 1
    assert [r.evidence_ref for r in store.list_payment_records("c1")] == ["b.jpg"]


def test_build_pipeline_wires_collaborators(store, tmp_path):
    config = load_pipeline_config(str(tmp_path / "missing.yml"), environ={"OCR_TIMEOUT_MS": "2000"})
    client = MagicMock()
    limiter = MagicMock()

    pipeline = build_pipeline(config, store=store, notifier=MagicMock(), recognition_client=client, rate_limiter=limiter)

    assert isinstance(pipeline.recognizer, RecognitionAdapter)
    assert pipeline.recognizer.timeout_seconds == 2.0
    assert pipeline.fraud_detector.duplicate_lookup == store.find_payment_by_transaction_id
    assert pipeline.verifier.exchange_rate == 4000
    pipeline.recognizer.close()
