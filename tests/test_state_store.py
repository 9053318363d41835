from datetime import datetime, timezone

import pytest

from payment_models import (
    Confidence,
    ExpectedAmountRecord,
    FraudAlert,
    FraudType,
    PaymentLabel,
    PaymentRecord,
    ReviewStatus,
    Severity,
    VerificationStatus,
)
from state_store import PaymentStateStore, PersistenceError

NOW = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)


def _record(record_id="r1", label=PaymentLabel.PAID, status=VerificationStatus.VERIFIED, tx="TX1"):
    return PaymentRecord(
        record_id=record_id,
        customer_ref="c1",
        evidence_ref="img.jpg",
        payment_label=label,
        verification_status=status,
        amount_in_base=100000.0,
        is_verified=label is PaymentLabel.PAID,
        verification_notes="ok",
        confidence_level=Confidence.HIGH,
        fraud_flag=False,
        created_at=NOW,
        transaction_id=tx,
    )


def _alert(alert_id="FA-20260120-AAAAAA", fraud_type=FraudType.OLD_SCREENSHOT):
    return FraudAlert(
        alert_id=alert_id,
        fraud_type=fraud_type,
        severity=Severity.HIGH,
        payment_record_ref="r1",
        customer_ref="c1",
        detected_at=NOW,
        reason="Screenshot is 10 days old (max allowed: 7 days)",
        age_days=10,
    )


def test_payment_record_round_trip_and_filters(store):
    store.insert_payment_record(_record("r1"))
    store.insert_payment_record(_record("r2", PaymentLabel.FRAUD_PENDING, VerificationStatus.REJECTED, tx="TX2"))

    assert store.get_payment_record("r1") == _record("r1")
    assert store.get_payment_record("missing") is None
    assert [r.record_id for r in store.list_payment_records("c1")] == ["r1", "r2"]
    verified = store.list_payment_records("c1", verification_statuses=[VerificationStatus.VERIFIED])
    assert [r.record_id for r in verified] == ["r1"]


def test_records_are_append_only(store):
    store.insert_payment_record(_record("r1"))
    with pytest.raises(PersistenceError):
        store.insert_payment_record(_record("r1"))


def test_find_payment_by_transaction_id_ignores_rejected(store):
    store.insert_payment_record(_record("r1", PaymentLabel.FRAUD_PENDING, VerificationStatus.REJECTED, tx="TX1"))
    assert store.find_payment_by_transaction_id("TX1") is None

    store.insert_payment_record(_record("r2", tx="TX1"))
    assert store.find_payment_by_transaction_id("TX1").record_id == "r2"


def test_fraud_alert_review_flow(store):
    store.insert_payment_record(_record("r1"))
    store.insert_fraud_alert(_alert())
    store.insert_fraud_alert(_alert("FA-20260120-BBBBBB", FraudType.MISSING_DATE))

    pending = store.list_fraud_alerts(review_status=ReviewStatus.PENDING)
    assert {a.alert_id for a in pending} == {"FA-20260120-AAAAAA", "FA-20260120-BBBBBB"}

    assert store.review_fraud_alert("FA-20260120-AAAAAA", ReviewStatus.FALSE_POSITIVE, "admin", "bank delay", NOW)
    assert not store.review_fraud_alert("FA-unknown", ReviewStatus.APPROVED, "admin")

    reviewed = store.get_fraud_alert("FA-20260120-AAAAAA")
    assert reviewed.review_status is ReviewStatus.FALSE_POSITIVE
    assert reviewed.reviewed_by == "admin"
    assert reviewed.reviewed_at == NOW
    # 支払い記録はレビューでは変わらない
    assert store.get_payment_record("r1") == _record("r1")

    stats = store.fraud_alert_stats()
    assert stats["total"] == 2
    assert stats["pending_review"] == 1
    assert stats["by_type"] == {"OLD_SCREENSHOT": 1, "MISSING_DATE": 1}
    assert [a.alert_id for a in store.list_fraud_alerts(fraud_type=FraudType.MISSING_DATE)] == ["FA-20260120-BBBBBB"]


def test_expected_amount_upsert(store):
    assert store.get_expected_amount("c1") is None
    store.put_expected_amount(ExpectedAmountRecord("c1", 100000))
    store.put_expected_amount(ExpectedAmountRecord("c1", 120000))
    assert store.get_expected_amount("c1") == ExpectedAmountRecord("c1", 120000)


def test_audit_log(store):
    store.write_audit("INFO", "pipeline", "process_event", ["e1", "r1"], "PAID/verified")
    store.write_audit("ERROR", "pipeline", "process_event", ["e2"], "failed", error="boom")

    entries = store.list_audit("process_event")
    assert [e["result"] for e in entries] == ["PAID/verified", "failed"]
    assert entries[0]["target_ids"] == ["e1", "r1"]
    assert entries[1]["error"] == "boom"


def test_storage_errors_are_wrapped(tmp_path):
    broken = PaymentStateStore(str(tmp_path / "missing_dir" / "state.db"))
    with pytest.raises(PersistenceError):
        broken.init_db()


def test_db_path_follows_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("PAYMENT_STATE_DB", str(tmp_path / "a.db"))
    s = PaymentStateStore()
    assert s.db_path == str(tmp_path / "a.db")
    assert PaymentStateStore("explicit.db").db_path == "explicit.db"


def test_reminder_history(store):
    assert store.last_reminder_at("c1") is None
    first = datetime(2026, 1, 20, 9, 0, tzinfo=timezone.utc)
    second = datetime(2026, 1, 21, 9, 0, tzinfo=timezone.utc)
    store.record_reminder("c1", "UNPAID", 100000, second)
    store.record_reminder("c1", "UNPAID", 100000, first)
    store.record_reminder("c2", "PARTIAL_OVERDUE", 40000, first)
    assert store.last_reminder_at("c1") == second
