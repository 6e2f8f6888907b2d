"""Configuration helpers for the Brand Interview Agent."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from importlib import import_module
from pathlib import Path
from typing import Dict, Optional


@dataclass(slots=True)
class ModelSettings:
    """Holds credentials for the run-based assistant service."""

    provider: str
    api_key: str
    assistant_id: str
    endpoint: Optional[str] = None
    api_version: Optional[str] = None


@dataclass(slots=True)
class RunSettings:
    """Timing knobs for run polling and stray-run cleanup."""

    poll_interval_ms: int = 1000
    max_attempts: int = 30
    cancel_settle_ms: int = 2000
    start_retry_delay_ms: int = 2000


def _empty_links() -> Dict[str, str]:
    return {}


@dataclass(slots=True)
class AppSettings:
    """Top-level application settings loaded from environment variables."""

    model: ModelSettings
    runs: RunSettings
    data_dir: Path
    output_dir: Path
    redis_url: Optional[str]
    promo_links: Dict[str, str] = field(default_factory=_empty_links)
    otlp_endpoint: Optional[str] = None

    @classmethod
    def load(cls) -> "AppSettings":
        """Load settings from the environment or .env file."""
        _ensure_dotenv()
        provider = os.getenv("BRAND_MODEL_PROVIDER", "openai")
        api_key = os.getenv("BRAND_MODEL_API_KEY")
        if not api_key:
            raise RuntimeError(
                "BRAND_MODEL_API_KEY environment variable is required."
            )
        assistant_id = os.getenv("BRAND_ASSISTANT_ID")
        if not assistant_id:
            raise RuntimeError(
                "BRAND_ASSISTANT_ID environment variable is required."
            )
        runs = RunSettings(
            poll_interval_ms=_read_int("BRAND_POLL_INTERVAL_MS", 1000),
            max_attempts=_read_int("BRAND_POLL_MAX_ATTEMPTS", 30, minimum=1),
            cancel_settle_ms=_read_int("BRAND_CANCEL_SETTLE_MS", 2000),
            start_retry_delay_ms=_read_int(
                "BRAND_START_RETRY_DELAY_MS", 2000
            ),
        )
        data_dir = Path(os.getenv("BRAND_DATA_DIR", "data/conversations"))
        data_dir.mkdir(parents=True, exist_ok=True)
        output_dir = Path(os.getenv("BRAND_OUTPUT_DIR", "outputs"))
        output_dir.mkdir(parents=True, exist_ok=True)
        redis_url: Optional[str] = os.getenv(
            "BRAND_REDIS_URL", "redis://localhost:6379/0"
        )
        if redis_url is not None and not redis_url.strip():
            redis_url = None
        otlp_endpoint = os.getenv("BRAND_OTLP_ENDPOINT", "").strip() or None
        return cls(
            model=ModelSettings(
                provider=provider,
                api_key=api_key,
                assistant_id=assistant_id,
                endpoint=os.getenv("BRAND_MODEL_ENDPOINT"),
                api_version=os.getenv("BRAND_MODEL_API_VERSION"),
            ),
            runs=runs,
            data_dir=data_dir,
            output_dir=output_dir,
            redis_url=redis_url,
            promo_links=_read_links("BRAND_PROMO_LINKS"),
            otlp_endpoint=otlp_endpoint,
        )


def _read_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be at least {minimum}")
    return value


def _read_links(name: str) -> Dict[str, str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"{name} must be a JSON object") from exc
    if not isinstance(payload, dict):
        raise RuntimeError(f"{name} must be a JSON object")
    return {
        str(phrase): str(url)
        for phrase, url in payload.items()
        if str(phrase).strip() and str(url).strip()
    }


def _ensure_dotenv() -> None:
    """Load dotenv variables and provide a helpful error if missing."""

    try:
        dotenv_module = import_module("dotenv")
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dep
        raise RuntimeError(
            "python-dotenv is required. Install with `pip install "
            "python-dotenv`."
        ) from exc

    load_dotenv = getattr(dotenv_module, "load_dotenv")
    load_dotenv()
