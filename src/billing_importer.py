import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from payment_models import ExpectedAmountRecord

logger = logging.getLogger(__name__)

CUSTOMER_COLUMNS = ("customer_ref", "chat_id", "chatId", "customer")
AMOUNT_COLUMNS = ("expected_amount", "amount", "expectedAmount")


def _pick_column(df: pd.DataFrame, candidates) -> Optional[str]:
    for name in candidates:
        if name in df.columns:
            return name
    return None


def load_expected_amounts(csv_path: str) -> pd.DataFrame:
    """請求データ CSV を読み込み、customer_ref / expected_amount の2列に正規化する"""
    df = pd.read_csv(Path(csv_path), dtype=str)
    customer_col = _pick_column(df, CUSTOMER_COLUMNS)
    amount_col = _pick_column(df, AMOUNT_COLUMNS)
    if customer_col is None or amount_col is None:
        raise ValueError(f"{csv_path}: customer and amount columns are required (got {list(df.columns)})")

    out = pd.DataFrame({
        "customer_ref": df[customer_col].fillna("").str.strip(),
        "expected_amount": pd.to_numeric(
            df[amount_col].fillna("").str.replace(",", "", regex=False).str.strip(), errors="coerce"
        ),
    })
    out = out[(out["customer_ref"] != "") & (out["expected_amount"] > 0)]
    # 同じ顧客が複数行ある場合は最後の行を採用
    return out.drop_duplicates(subset="customer_ref", keep="last")


def import_expected_amounts(csv_path: str, store) -> int:
    df = load_expected_amounts(csv_path)
    for row in df.itertuples(index=False):
        store.put_expected_amount(ExpectedAmountRecord(row.customer_ref, float(row.expected_amount)))
    logger.info("📥 請求額を取り込みました: %d件 (%s)", len(df), csv_path)
    return len(df)
