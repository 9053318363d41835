import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from payment_models import (
    Confidence,
    CustomerLedger,
    ExpectedAmountRecord,
    FraudAlert,
    FraudType,
    PaymentLabel,
    PaymentRecord,
    PaymentStatus,
    ReviewStatus,
    Severity,
    VerificationStatus,
)


class PersistenceError(Exception):
    """ストレージ操作の失敗。現在のイベントのみ中断する"""


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStateStore:
    """支払い記録・不正アラート・顧客台帳の SQLite ストア

    記録とアラートは追記のみ。台帳は顧客ごとに1行を upsert する。
    """

    def __init__(self, db_path: Optional[str] = None):
        # 未指定なら環境変数から毎回取得（テストでの monkeypatch に追従するため）
        self._db_path = db_path

    @property
    def db_path(self) -> str:
        return self._db_path or os.getenv("PAYMENT_STATE_DB", "payment_state.db")

    @contextmanager
    def _conn(self):
        try:
            con = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open state db {self.db_path}: {e}") from e
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            yield con
            con.commit()
        except sqlite3.Error as e:
            con.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            con.close()

    def init_db(self):
        with self._conn() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS payment_records (
                  record_id TEXT PRIMARY KEY,
                  customer_ref TEXT NOT NULL,
                  evidence_ref TEXT,
                  payment_label TEXT,
                  verification_status TEXT,
                  amount_in_base REAL,
                  is_verified INTEGER,
                  verification_notes TEXT,
                  confidence_level TEXT,
                  fraud_flag INTEGER,
                  transaction_id TEXT,
                  rejection_reason TEXT,
                  created_at TEXT
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_records_customer ON payment_records(customer_ref, verification_status);")
            con.execute("CREATE INDEX IF NOT EXISTS idx_records_txid ON payment_records(transaction_id);")
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS fraud_alerts (
                  alert_id TEXT PRIMARY KEY,
                  fraud_type TEXT,
                  severity TEXT,
                  payment_record_ref TEXT,
                  customer_ref TEXT,
                  detected_at TEXT,
                  reason TEXT,
                  age_days INTEGER,
                  transaction_date_claim TEXT,
                  transaction_id TEXT,
                  review_status TEXT,
                  reviewed_by TEXT,
                  reviewed_at TEXT,
                  review_notes TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS customer_ledgers (
                  customer_ref TEXT PRIMARY KEY,
                  total_expected REAL,
                  total_paid REAL,
                  total_unverified REAL,
                  payment_count INTEGER,
                  payment_status TEXT,
                  remaining_balance REAL,
                  excess_amount REAL,
                  first_payment_date TEXT,
                  last_payment_date TEXT,
                  last_updated TEXT,
                  payment_ids_json TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS expected_amounts (
                  customer_ref TEXT PRIMARY KEY,
                  expected_amount_base REAL,
                  updated_at TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                  ts TEXT,
                  level TEXT,
                  actor TEXT,
                  action TEXT,
                  target_ids TEXT,
                  result TEXT,
                  error TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS payment_reminders (
                  customer_ref TEXT,
                  reminder_type TEXT,
                  amount REAL,
                  sent_at TEXT
                );
                """
            )

    # ---- 支払い記録 ----

    def insert_payment_record(self, record: PaymentRecord):
        with self._conn() as con:
            con.execute(
                "INSERT INTO payment_records(record_id, customer_ref, evidence_ref, payment_label, verification_status, "
                "amount_in_base, is_verified, verification_notes, confidence_level, fraud_flag, transaction_id, "
                "rejection_reason, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    record.record_id,
                    record.customer_ref,
                    record.evidence_ref,
                    record.payment_label.value,
                    record.verification_status.value,
                    record.amount_in_base,
                    int(record.is_verified),
                    record.verification_notes,
                    record.confidence_level.value,
                    int(record.fraud_flag),
                    record.transaction_id,
                    record.rejection_reason,
                    _dt(record.created_at),
                ),
            )

    @staticmethod
    def _record_from_row(row) -> PaymentRecord:
        return PaymentRecord(
            record_id=row[0],
            customer_ref=row[1],
            evidence_ref=row[2],
            payment_label=PaymentLabel(row[3]),
            verification_status=VerificationStatus(row[4]),
            amount_in_base=row[5],
            is_verified=bool(row[6]),
            verification_notes=row[7] or "",
            confidence_level=Confidence(row[8]),
            fraud_flag=bool(row[9]),
            transaction_id=row[10],
            rejection_reason=row[11],
            created_at=_parse_dt(row[12]),
        )

    _RECORD_COLUMNS = (
        "record_id, customer_ref, evidence_ref, payment_label, verification_status, amount_in_base, is_verified, "
        "verification_notes, confidence_level, fraud_flag, transaction_id, rejection_reason, created_at"
    )

    def get_payment_record(self, record_id: str) -> Optional[PaymentRecord]:
        with self._conn() as con:
            cur = con.execute(f"SELECT {self._RECORD_COLUMNS} FROM payment_records WHERE record_id=?", (record_id,))
            row = cur.fetchone()
        return self._record_from_row(row) if row else None

    def list_payment_records(self, customer_ref: str,
                             verification_statuses: Optional[Iterable[VerificationStatus]] = None) -> List[PaymentRecord]:
        sql = f"SELECT {self._RECORD_COLUMNS} FROM payment_records WHERE customer_ref=?"
        params: list = [str(customer_ref)]
        if verification_statuses is not None:
            statuses = [VerificationStatus(s).value for s in verification_statuses]
            sql += f" AND verification_status IN ({','.join('?' * len(statuses))})"
            params.extend(statuses)
        sql += " ORDER BY created_at, record_id"
        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [self._record_from_row(r) for r in rows]

    def find_payment_by_transaction_id(self, transaction_id: str,
                                       labels: Iterable[PaymentLabel] = (PaymentLabel.PAID, PaymentLabel.PENDING)) -> Optional[PaymentRecord]:
        values = [PaymentLabel(l).value for l in labels]
        with self._conn() as con:
            cur = con.execute(
                f"SELECT {self._RECORD_COLUMNS} FROM payment_records WHERE transaction_id=? "
                f"AND payment_label IN ({','.join('?' * len(values))}) ORDER BY created_at LIMIT 1",
                [transaction_id, *values],
            )
            row = cur.fetchone()
        return self._record_from_row(row) if row else None

    # ---- 不正アラート ----

    def insert_fraud_alert(self, alert: FraudAlert):
        with self._conn() as con:
            con.execute(
                "INSERT INTO fraud_alerts(alert_id, fraud_type, severity, payment_record_ref, customer_ref, detected_at, "
                "reason, age_days, transaction_date_claim, transaction_id, review_status, reviewed_by, reviewed_at, "
                "review_notes) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    alert.alert_id,
                    alert.fraud_type.value,
                    alert.severity.value,
                    alert.payment_record_ref,
                    alert.customer_ref,
                    _dt(alert.detected_at),
                    alert.reason,
                    alert.age_days,
                    alert.transaction_date_claim,
                    alert.transaction_id,
                    alert.review_status.value,
                    alert.reviewed_by,
                    _dt(alert.reviewed_at),
                    alert.review_notes,
                ),
            )

    _ALERT_COLUMNS = (
        "alert_id, fraud_type, severity, payment_record_ref, customer_ref, detected_at, reason, age_days, "
        "transaction_date_claim, transaction_id, review_status, reviewed_by, reviewed_at, review_notes"
    )

    @staticmethod
    def _alert_from_row(row) -> FraudAlert:
        return FraudAlert(
            alert_id=row[0],
            fraud_type=FraudType(row[1]),
            severity=Severity(row[2]),
            payment_record_ref=row[3],
            customer_ref=row[4],
            detected_at=_parse_dt(row[5]),
            reason=row[6] or "",
            age_days=row[7],
            transaction_date_claim=row[8],
            transaction_id=row[9],
            review_status=ReviewStatus(row[10]),
            reviewed_by=row[11],
            reviewed_at=_parse_dt(row[12]),
            review_notes=row[13],
        )

    def get_fraud_alert(self, alert_id: str) -> Optional[FraudAlert]:
        with self._conn() as con:
            row = con.execute(f"SELECT {self._ALERT_COLUMNS} FROM fraud_alerts WHERE alert_id=?", (alert_id,)).fetchone()
        return self._alert_from_row(row) if row else None

    def list_fraud_alerts(self, review_status: Optional[ReviewStatus] = None,
                          fraud_type: Optional[FraudType] = None) -> List[FraudAlert]:
        sql = f"SELECT {self._ALERT_COLUMNS} FROM fraud_alerts WHERE 1=1"
        params = []
        if review_status is not None:
            sql += " AND review_status=?"
            params.append(ReviewStatus(review_status).value)
        if fraud_type is not None:
            sql += " AND fraud_type=?"
            params.append(FraudType(fraud_type).value)
        sql += " ORDER BY detected_at DESC"
        with self._conn() as con:
            rows = con.execute(sql, params).fetchall()
        return [self._alert_from_row(r) for r in rows]

    def review_fraud_alert(self, alert_id: str, review_status: ReviewStatus, reviewed_by: str,
                           notes: Optional[str] = None, reviewed_at: Optional[datetime] = None) -> bool:
        """外部レビューによるアラート状態の更新。支払い記録は変更しない"""
        with self._conn() as con:
            cur = con.execute(
                "UPDATE fraud_alerts SET review_status=?, reviewed_by=?, reviewed_at=?, review_notes=? WHERE alert_id=?",
                (ReviewStatus(review_status).value, reviewed_by, _dt(reviewed_at or _now()), notes, alert_id),
            )
            return cur.rowcount > 0

    def fraud_alert_stats(self) -> Dict:
        with self._conn() as con:
            total = con.execute("SELECT COUNT(*) FROM fraud_alerts").fetchone()[0]
            by_status = dict(con.execute("SELECT review_status, COUNT(*) FROM fraud_alerts GROUP BY review_status").fetchall())
            by_type = dict(con.execute("SELECT fraud_type, COUNT(*) FROM fraud_alerts GROUP BY fraud_type").fetchall())
        return {
            "total": total,
            "pending_review": by_status.get(ReviewStatus.PENDING.value, 0),
            "by_status": by_status,
            "by_type": by_type,
        }

    # ---- 顧客台帳 ----

    def upsert_customer_ledger(self, ledger: CustomerLedger):
        with self._conn() as con:
            con.execute(
                "INSERT OR REPLACE INTO customer_ledgers(customer_ref, total_expected, total_paid, total_unverified, "
                "payment_count, payment_status, remaining_balance, excess_amount, first_payment_date, "
                "last_payment_date, last_updated, payment_ids_json) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    ledger.customer_ref,
                    ledger.total_expected,
                    ledger.total_paid,
                    ledger.total_unverified,
                    ledger.payment_count,
                    ledger.payment_status.value,
                    ledger.remaining_balance,
                    ledger.excess_amount,
                    _dt(ledger.first_payment_date),
                    _dt(ledger.last_payment_date),
                    _dt(ledger.last_updated),
                    json.dumps(ledger.payment_ids),
                ),
            )

    _LEDGER_COLUMNS = (
        "customer_ref, total_expected, total_paid, total_unverified, payment_count, payment_status, "
        "remaining_balance, excess_amount, first_payment_date, last_payment_date, last_updated, payment_ids_json"
    )

    @staticmethod
    def _ledger_from_row(row) -> CustomerLedger:
        return CustomerLedger(
            customer_ref=row[0],
            total_expected=row[1],
            total_paid=row[2],
            total_unverified=row[3],
            payment_count=row[4],
            payment_status=PaymentStatus(row[5]),
            remaining_balance=row[6],
            excess_amount=row[7],
            first_payment_date=_parse_dt(row[8]),
            last_payment_date=_parse_dt(row[9]),
            last_updated=_parse_dt(row[10]),
            payment_ids=json.loads(row[11] or "[]"),
        )

    def get_customer_ledger(self, customer_ref: str) -> Optional[CustomerLedger]:
        with self._conn() as con:
            row = con.execute(f"SELECT {self._LEDGER_COLUMNS} FROM customer_ledgers WHERE customer_ref=?",
                              (str(customer_ref),)).fetchone()
        return self._ledger_from_row(row) if row else None

    def list_ledgers_by_status(self, status: PaymentStatus) -> List[CustomerLedger]:
        with self._conn() as con:
            rows = con.execute(f"SELECT {self._LEDGER_COLUMNS} FROM customer_ledgers WHERE payment_status=? "
                               "ORDER BY customer_ref", (PaymentStatus(status).value,)).fetchall()
        return [self._ledger_from_row(r) for r in rows]

    def list_stale_ledgers(self, statuses: Iterable[PaymentStatus], updated_before: datetime) -> List[CustomerLedger]:
        values = [PaymentStatus(s).value for s in statuses]
        with self._conn() as con:
            rows = con.execute(
                f"SELECT {self._LEDGER_COLUMNS} FROM customer_ledgers WHERE payment_status IN "
                f"({','.join('?' * len(values))}) ORDER BY customer_ref",
                values,
            ).fetchall()
        ledgers = [self._ledger_from_row(r) for r in rows]
        # ISO文字列はタイムゾーン表記が混在し得るため datetime で比較する
        return [l for l in ledgers if l.last_updated and l.last_updated < updated_before]

    # ---- 請求額（外部の請求データから取り込み） ----

    def put_expected_amount(self, record: ExpectedAmountRecord):
        with self._conn() as con:
            con.execute(
                "INSERT OR REPLACE INTO expected_amounts(customer_ref, expected_amount_base, updated_at) VALUES (?,?,?)",
                (str(record.customer_ref), float(record.expected_amount_base), _dt(_now())),
            )

    def get_expected_amount(self, customer_ref: str) -> Optional[ExpectedAmountRecord]:
        with self._conn() as con:
            row = con.execute("SELECT customer_ref, expected_amount_base FROM expected_amounts WHERE customer_ref=?",
                              (str(customer_ref),)).fetchone()
        return ExpectedAmountRecord(row[0], row[1]) if row else None

    # ---- 支払いリマインダー ----

    def record_reminder(self, customer_ref: str, reminder_type: str, amount: float, sent_at: datetime):
        with self._conn() as con:
            con.execute(
                "INSERT INTO payment_reminders(customer_ref, reminder_type, amount, sent_at) VALUES (?,?,?,?)",
                (str(customer_ref), reminder_type, amount, _dt(sent_at)),
            )

    def last_reminder_at(self, customer_ref: str) -> Optional[datetime]:
        with self._conn() as con:
            rows = con.execute("SELECT sent_at FROM payment_reminders WHERE customer_ref=?",
                               (str(customer_ref),)).fetchall()
        sent = [_parse_dt(r[0]) for r in rows if r[0]]
        return max(sent) if sent else None

    # ---- 監査ログ ----

    def write_audit(self, level: str, actor: str, action: str, target_ids: list, result: str,
                    error: Optional[str] = None):
        with self._conn() as con:
            con.execute(
                "INSERT INTO audit_log(ts, level, actor, action, target_ids, result, error) VALUES (?,?,?,?,?,?,?)",
                (_dt(_now()), level, actor, action, json.dumps(target_ids), result, error),
            )

    def list_audit(self, action: Optional[str] = None) -> List[Dict]:
        sql = "SELECT ts, level, actor, action, target_ids, result, error FROM audit_log"
        params = []
        if action:
            sql += " WHERE action=?"
            params.append(action)
        with self._conn() as con:
            rows = con.execute(sql + " ORDER BY rowid", params).fetchall()
        return [
            {"ts": r[0], "level": r[1], "actor": r[2], "action": r[3], "target_ids": json.loads(r[4] or "[]"),
             "result": r[5], "error": r[6]}
            for r in rows
        ]
