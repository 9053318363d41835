#!/usr/bin/env python
"""
支払いスクリーンショット認識クライアント

Claude API（画像入力）で銀行アプリのスクリーンショットから支払い情報を抽出する。
RecognitionAdapter は呼び出し前に必ずレートリミッターを通し、
全体をタイムアウトで打ち切る。JSONとして解釈できない応答は例外にせず
低信頼度の劣化結果として返す。
"""

import base64
import json
import logging
import math
import mimetypes
import os
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from payment_models import Confidence, RecognizedPayment
from rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


class RecognitionTimeout(TimeoutError):
    """認識サービスが制限時間内に応答しなかった（イベント失敗扱い。却下ではない）"""


RECOGNITION_PROMPT = """You are a BANK PAYMENT SCREENSHOT VERIFICATION system for Cambodian banks.

STEP 1: IDENTIFY IMAGE TYPE
Set isBankStatement=false for chat screenshots, invoices, bills, QR codes,
random photos or anything without a banking app interface.
Set isBankStatement=true for transfer confirmations from a banking app
(ABA Bank, Wing, ACLEDA, Canadia, Prince Bank, Sathapana, ...).

STEP 2: PAYMENT VALIDITY
isPaid=true only when the screenshot clearly confirms a completed transfer.

STEP 3: EXTRACT PAYMENT DATA (only if isPaid=true)
- amount: the main/header amount, POSITIVE, no commas. Do not convert currencies.
- currency: "KHR" or "USD" exactly as displayed.
- toAccount: the recipient account number.
- transactionDate: ISO format "YYYY-MM-DDTHH:MM". If you can only read the
  components, return dateDay, dateMonth, dateYear, dateHour, dateMinute instead.

Return ONLY this JSON object:
{
  "isBankStatement": true/false,
  "isPaid": true/false,
  "amount": number,
  "currency": "KHR" or "USD",
  "transactionId": "string",
  "referenceNumber": "string",
  "fromAccount": "string",
  "toAccount": "string",
  "bankName": "string",
  "transactionDate": "YYYY-MM-DDTHH:MM",
  "confidence": "high/medium/low"
}

RULES:
1. Random photo -> isBankStatement=false, isPaid=false, confidence=low
2. Blurry bank screenshot -> isBankStatement=true, isPaid=false, confidence=low
3. Clear bank screenshot -> isBankStatement=true, isPaid=true, confidence=high/medium
"""


class ClaudeVisionClient:
    """Claude API クライアント（画像付きメッセージ）"""

    def __init__(self, api_key: Optional[str] = None, model: str = "claude-3-5-sonnet-20241022",
                 request_timeout: float = 60.0):
        self.api_key = api_key or os.getenv("CLAUDE_API_KEY")
        self.model = model
        self.request_timeout = request_timeout
        self.base_url = "https://api.anthropic.com/v1/messages"
        self.headers = {
            "x-api-key": self.api_key or "",
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    def extract_payment_text(self, image_bytes: bytes, media_type: str = "image/jpeg") -> str:
        """画像を送信して応答テキストを返す"""
        data = {
            "model": self.model,
            "max_tokens": 1500,
            "temperature": 0.0,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            },
                        },
                        {"type": "text", "text": RECOGNITION_PROMPT},
                    ],
                }
            ],
        }

        response = requests.post(self.base_url, headers=self.headers, json=data, timeout=self.request_timeout)
        response.raise_for_status()
        content = response.json().get("content") or []
        if not isinstance(content, list):
            return ""
        return "".join(
            str(block.get("text", ""))
            for block in content
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )


def _extract_json_object(text: str) -> Dict[str, Any]:
    # ```json ... ``` で囲まれていても最初の {...} を取り出す
    match = re.search(r"\{[\s\S]*\}", text or "")
    if not match:
        raise ValueError("No JSON object found in response")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("Response JSON is not an object")
    return parsed


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _as_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        amount = abs(float(value))
    elif isinstance(value, str):
        cleaned = re.sub(r"[^\d.\-]", "", value.replace(",", ""))
        try:
            amount = abs(float(cleaned)) if cleaned else None
        except ValueError:
            return None
    else:
        return None
    # Infinity / NaN / 1e400 は金額として扱わない
    if amount is None or not math.isfinite(amount):
        return None
    return amount


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "undefined"):
        return None
    return text


def _as_confidence(value: Any) -> Confidence:
    try:
        return Confidence(str(value).strip().lower())
    except ValueError:
        return Confidence.LOW


def _compose_date(data: Dict[str, Any]) -> Optional[str]:
    """dateYear/dateMonth/dateDay から ISO 形式の日時を組み立てる"""
    try:
        year, month, day = int(data["dateYear"]), int(data["dateMonth"]), int(data["dateDay"])
        hour = int(data.get("dateHour") or 0)
        minute = int(data.get("dateMinute") or 0)
        return datetime(year, month, day, hour, minute).isoformat(timespec="minutes")
    except (KeyError, TypeError, ValueError):
        return None


def parse_recognition_response(text: str) -> RecognizedPayment:
    """応答テキストを RecognizedPayment に変換する。失敗時は劣化結果"""
    try:
        data = _extract_json_object(text)
    except (ValueError, json.JSONDecodeError) as e:
        logger.warning("⚠️ 認識結果のJSON解析に失敗: %s", e)
        return RecognizedPayment.parse_failure(text)

    is_paid = _as_bool(data.get("isPaid"))
    claim = _as_text(data.get("transactionDate")) or _compose_date(data)

    return RecognizedPayment(
        is_claimed_payment=bool(is_paid),
        amount=_as_amount(data.get("amount")),
        currency=_as_text(data.get("currency")),
        transaction_id=_as_text(data.get("transactionId")),
        reference_number=_as_text(data.get("referenceNumber")),
        from_account=_as_text(data.get("fromAccount")),
        to_account=_as_text(data.get("toAccount")),
        bank_name=_as_text(data.get("bankName")),
        transaction_date_claim=claim,
        confidence_level=_as_confidence(data.get("confidence")),
        is_payment_evidence=_as_bool(data.get("isBankStatement")),
        raw_text=text,
    )


def load_image(image_ref: str) -> Tuple[bytes, str]:
    path = Path(image_ref)
    media_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    return path.read_bytes(), media_type


class RecognitionAdapter:
    """レート制限・タイムアウト・解析失敗フォールバック付きの認識ラッパー"""

    def __init__(
        self,
        client: ClaudeVisionClient,
        rate_limiter: SlidingWindowRateLimiter,
        timeout_seconds: float = 60.0,
        image_loader: Callable[[str], Tuple[bytes, str]] = load_image,
    ):
        self.client = client
        self.rate_limiter = rate_limiter
        self.timeout_seconds = timeout_seconds
        self.image_loader = image_loader
        # タイムアウトした呼び出しはスレッド上で走り続ける
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="recognition")

    def analyze(self, image_ref: str) -> RecognizedPayment:
        image_bytes, media_type = self.image_loader(image_ref)

        self.rate_limiter.wait_for_slot()
        logger.info("🔍 認識サービス呼び出し: %s", image_ref)

        future = self._executor.submit(self.client.extract_payment_text, image_bytes, media_type)
        try:
            text = future.result(timeout=self.timeout_seconds)
        except (FutureTimeoutError, requests.Timeout):
            raise RecognitionTimeout(f"Recognition timed out after {self.timeout_seconds:.0f}s: {image_ref}")
        except requests.RequestException as e:
            logger.warning("⚠️ 認識サービスエラーのため劣化結果を返します: %s", e)
            return RecognizedPayment.parse_failure(f"request_failed: {e}")
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("⚠️ 認識サービスの応答形式が不正なため劣化結果を返します: %s", e)
            return RecognizedPayment.parse_failure(f"malformed_response: {e}")

        result = parse_recognition_response(text)
        logger.info(
            "✅ 認識完了: paid=%s amount=%s %s confidence=%s",
            result.is_claimed_payment, result.amount, result.currency or "", result.confidence_level.value,
        )
        return result

    def close(self) -> None:
        self._executor.shutdown(wait=False)
