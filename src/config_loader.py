import os
from dataclasses import dataclass, fields
from typing import Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv


DEFAULTS = {
    "currency": {"base": "KHR", "foreign": "USD", "exchange_rate": 4000},
    "verification": {"tolerance_percent": 5, "required_recipient_account": ""},
    "fraud": {"max_screenshot_age_days": 7, "local_timezone": "", "detect_duplicate_transactions": True},
    "recognition": {
        "rate_limit_per_minute": 10,
        "min_interval_ms": 0,
        "timeout_ms": 60000,
        "model": "claude-3-5-sonnet-20241022",
    },
    "queue": {"max_size": 0, "idle_delay_ms": 100},
    "reminders": {"pending_warning_days": 5},
    "storage": {"state_db_path": "payment_state.db"},
}

# 環境変数 → (セクション, キー)
ENV_OVERRIDES = {
    "USD_TO_KHR_RATE": ("currency", "exchange_rate"),
    "PAYMENT_TOLERANCE_PERCENT": ("verification", "tolerance_percent"),
    "EXPECTED_RECIPIENT_ACCOUNT": ("verification", "required_recipient_account"),
    "MAX_SCREENSHOT_AGE_DAYS": ("fraud", "max_screenshot_age_days"),
    "PAYMENT_LOCAL_TIMEZONE": ("fraud", "local_timezone"),
    "OCR_RATE_LIMIT_PER_MINUTE": ("recognition", "rate_limit_per_minute"),
    "OCR_MIN_DELAY_MS": ("recognition", "min_interval_ms"),
    "OCR_TIMEOUT_MS": ("recognition", "timeout_ms"),
    "RECOGNITION_MODEL": ("recognition", "model"),
    "BOT_MAX_QUEUE_SIZE": ("queue", "max_size"),
    "BOT_MIN_DELAY_MS": ("queue", "idle_delay_ms"),
    "PAYMENT_STATE_DB": ("storage", "state_db_path"),
    "PENDING_WARNING_DAYS": ("reminders", "pending_warning_days"),
}


@dataclass(frozen=True)
class PipelineConfig:
    exchange_rate: float = 4000.0
    base_currency: str = "KHR"
    foreign_currency: str = "USD"
    tolerance_percent: float = 5.0
    required_recipient_account: str = ""
    max_screenshot_age_days: int = 7
    local_timezone: str = ""
    detect_duplicate_transactions: bool = True
    recognition_rate_limit_per_minute: int = 10
    recognition_min_interval_ms: int = 0
    recognition_timeout_ms: int = 60000
    recognition_model: str = "claude-3-5-sonnet-20241022"
    queue_max_size: int = 0
    queue_idle_delay_ms: int = 100
    state_db_path: str = "payment_state.db"
    reminder_warning_days: int = 5

    @property
    def recognition_timeout_seconds(self) -> float:
        return self.recognition_timeout_ms / 1000.0


def _default_config_path() -> str:
    return os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "payment_verification.yml")


def _merge(base: Dict, override: Dict) -> Dict:
    # shallow merge defaults（セクション単位）
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in base.items()}
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k].update(v)
        else:
            merged[k] = v
    return merged


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _number(name: str, value, cast):
    try:
        return cast(str(value).replace(",", "").strip()) if isinstance(value, str) else cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be numeric, got {value!r}")


def load_raw_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict:
    """defaults → YAML → 環境変数 の順で重ねた生の設定辞書を返す"""
    path = path or _default_config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        cfg = {}

    merged = _merge(DEFAULTS, cfg)

    if environ is None:
        load_dotenv()
        environ = os.environ
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None and value != "":
            merged[section][key] = value
    return merged


def load_pipeline_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    raw = load_raw_config(path, environ)
    cur, ver, fraud = raw["currency"], raw["verification"], raw["fraud"]
    rec, queue, storage = raw["recognition"], raw["queue"], raw["storage"]

    config = PipelineConfig(
        exchange_rate=_number("exchange_rate", cur["exchange_rate"], float),
        base_currency=str(cur["base"]).upper(),
        foreign_currency=str(cur["foreign"]).upper(),
        tolerance_percent=_number("tolerance_percent", ver["tolerance_percent"], float),
        required_recipient_account=str(ver.get("required_recipient_account") or ""),
        max_screenshot_age_days=_number("max_screenshot_age_days", fraud["max_screenshot_age_days"], int),
        local_timezone=str(fraud.get("local_timezone") or ""),
        detect_duplicate_transactions=_as_bool(fraud.get("detect_duplicate_transactions", True)),
        recognition_rate_limit_per_minute=_number("recognition_rate_limit_per_minute", rec["rate_limit_per_minute"], int),
        recognition_min_interval_ms=_number("recognition_min_interval_ms", rec["min_interval_ms"], int),
        recognition_timeout_ms=_number("recognition_timeout_ms", rec["timeout_ms"], int),
        recognition_model=str(rec["model"]),
        queue_max_size=_number("queue_max_size", queue["max_size"], int),
        queue_idle_delay_ms=_number("queue_idle_delay_ms", queue["idle_delay_ms"], int),
        state_db_path=str(storage["state_db_path"]),
        reminder_warning_days=_number("reminder_warning_days", raw["reminders"]["pending_warning_days"], int),
    )
    validate_config(config)
    return config


def validate_config(config: PipelineConfig) -> None:
    if config.exchange_rate <= 0:
        raise ValueError("exchange_rate must be positive")
    if config.tolerance_percent < 0:
        raise ValueError("tolerance_percent must not be negative")
    if config.max_screenshot_age_days < 0:
        raise ValueError("max_screenshot_age_days must not be negative")
    if config.recognition_rate_limit_per_minute <= 0:
        raise ValueError("recognition_rate_limit_per_minute must be positive")
    if config.recognition_timeout_ms <= 0:
        raise ValueError("recognition_timeout_ms must be positive")
    if config.reminder_warning_days <= 0:
        raise ValueError("reminder_warning_days must be positive")
    for f in fields(config):
        if f.name.endswith("_ms") or f.name == "queue_max_size":
            if getattr(config, f.name) < 0:
                raise ValueError(f"{f.name} must not be negative")
