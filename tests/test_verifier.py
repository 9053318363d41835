import pytest

from payment_models import Confidence, ExpectedAmountRecord, PaymentLabel, RecognizedPayment
from verifier import (
    REASON_AMOUNT_MISMATCH,
    REASON_CANNOT_VERIFY,
    REASON_LOW_CONFIDENCE,
    REASON_NOT_PAYMENT,
    REASON_VERIFIED,
    REASON_WRONG_RECIPIENT,
    CurrencyKind,
    VerificationEngine,
    classify_currency,
    convert_to_base,
    tolerance_window,
)


def _recognized(amount=98000, currency="KHR", confidence=Confidence.HIGH, **kwargs):
    return RecognizedPayment(is_claimed_payment=kwargs.pop("is_claimed_payment", True), amount=amount,
                             currency=currency, confidence_level=confidence, **kwargs)


@pytest.fixture
def engine():
    return VerificationEngine(exchange_rate=4000, tolerance_percent=5)


def test_amount_within_tolerance_is_paid(engine):
    result = engine.verify(_recognized(98000), ExpectedAmountRecord("c1", 100000))
    assert result.is_verified
    assert result.label is PaymentLabel.PAID
    assert result.amount_in_base == 98000
    assert result.reason == REASON_VERIFIED
    assert result.notes == "Amount verified within 5% tolerance"


def test_half_payment_with_medium_confidence_is_pending(engine):
    result = engine.verify(_recognized(50000, confidence=Confidence.MEDIUM), ExpectedAmountRecord("c1", 100000))
    assert not result.is_verified
    assert result.label is PaymentLabel.PENDING
    assert result.notes == "Amount mismatch: Expected 100000 KHR, got 50000 KHR"


@pytest.mark.parametrize("amount, verified", [
    (95000, True),
    (105000, True),
    (94999, False),
    (105001, False),
])
def test_tolerance_bounds_are_inclusive(engine, amount, verified):
    result = engine.verify(_recognized(amount), ExpectedAmountRecord("c1", 100000))
    assert result.is_verified is verified


def test_usd_is_converted_at_fixed_rate(engine):
    result = engine.verify(_recognized(25, currency="usd"), ExpectedAmountRecord("c1", 100000))
    assert result.amount_in_base == 100000
    assert result.label is PaymentLabel.PAID


def test_unknown_currency_is_taken_at_face_value(engine):
    result = engine.verify(_recognized(100000, currency="THB"), ExpectedAmountRecord("c1", 100000))
    assert result.amount_in_base == 100000
    assert result.is_verified


def test_missing_expected_amount_cannot_verify(engine):
    result = engine.verify(_recognized(50000, confidence=Confidence.MEDIUM), None)
    assert not result.is_verified
    assert result.label is PaymentLabel.PENDING
    assert result.reason == REASON_LOW_CONFIDENCE
    assert result.notes == "Cannot verify - missing expected amount or extracted amount"


def test_missing_amount_with_high_confidence_reports_cannot_verify(engine):
    result = engine.verify(_recognized(None), ExpectedAmountRecord("c1", 100000))
    assert result.amount_in_base is None
    assert result.label is PaymentLabel.PENDING
    assert result.reason == REASON_CANNOT_VERIFY


def test_high_confidence_mismatch_reason(engine):
    result = engine.verify(_recognized(60000), ExpectedAmountRecord("c1", 100000))
    assert result.label is PaymentLabel.PENDING
    assert result.reason == REASON_AMOUNT_MISMATCH


def test_low_confidence_is_unpaid(engine):
    result = engine.verify(_recognized(100000, confidence=Confidence.LOW), ExpectedAmountRecord("c1", 100000))
    assert result.is_verified
    assert result.label is PaymentLabel.UNPAID
    assert result.reason == REASON_LOW_CONFIDENCE


def test_recipient_mismatch_overrides_amount_match():
    engine = VerificationEngine(required_recipient_account="000 054 702")
    result = engine.verify(_recognized(100000, to_account="999 111 222"), ExpectedAmountRecord("c1", 100000))
    assert not result.is_verified
    assert result.label is PaymentLabel.PENDING
    assert result.reason == REASON_WRONG_RECIPIENT
    assert "Recipient mismatch: expected 000054702, got 999111222" in result.notes


def test_recipient_ignores_whitespace_and_missing_account():
    engine = VerificationEngine(required_recipient_account="000 054 702")
    same = engine.verify(_recognized(100000, to_account="000054702"), ExpectedAmountRecord("c1", 100000))
    unread = engine.verify(_recognized(100000, to_account=None), ExpectedAmountRecord("c1", 100000))
    assert same.label is PaymentLabel.PAID
    assert unread.label is PaymentLabel.PAID


def test_not_payment_evidence_is_silent(engine):
    result = engine.verify(
        _recognized(None, confidence=Confidence.LOW, is_claimed_payment=False, is_payment_evidence=False),
        ExpectedAmountRecord("c1", 100000),
    )
    assert result.label is PaymentLabel.UNPAID
    assert result.reason == REASON_NOT_PAYMENT


def test_parse_failure_goes_to_manual_review(engine):
    result = engine.verify(RecognizedPayment.parse_failure("garbage"), ExpectedAmountRecord("c1", 100000))
    assert result.label is PaymentLabel.UNPAID
    assert result.reason == REASON_LOW_CONFIDENCE


def test_classify_and_convert_helpers():
    assert classify_currency("riel") is CurrencyKind.BASE
    assert classify_currency("USD") is CurrencyKind.FOREIGN
    assert classify_currency(None) is CurrencyKind.UNKNOWN
    assert convert_to_base(0, "USD", 4000) is None
    assert convert_to_base(2.5, "USD", 4000) == 10000
    assert tolerance_window(100000, 5) == (95000, 105000)


def test_mismatch_note_keeps_large_amounts_readable(engine):
    result = engine.verify(_recognized(1500000), ExpectedAmountRecord("c1", 2000000))
    assert result.notes == "Amount mismatch: Expected 2000000 KHR, got 1500000 KHR"


def test_conversion_overflow_cannot_verify(engine):
    assert convert_to_base(float("inf"), "KHR", 4000) is None
    result = engine.verify(_recognized(1e308, currency="USD"), ExpectedAmountRecord("c1", 100000))
    assert result.amount_in_base is None
    assert result.reason == REASON_CANNOT_VERIFY
