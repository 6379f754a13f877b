import json
import os
from typing import List

from .constants import DEFAULT_TARGET_MODELS, KEEPALIVE_INTERVAL_SECONDS


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


def _parse_models(raw: str) -> List[str]:
    raw = raw.strip()
    if not raw:
        return list(DEFAULT_TARGET_MODELS)
    # Accept a JSON array or a plain comma separated list
    if raw.startswith("["):
        try:
            items = json.loads(raw)
        except ValueError:
            return list(DEFAULT_TARGET_MODELS)
        return [str(m).strip() for m in items if str(m).strip()]
    return [m.strip() for m in raw.split(",") if m.strip()]


class Settings:
    def __init__(self) -> None:
        self.upstream_url_base: str = os.environ.get(
            "UPSTREAM_URL_BASE", "https://generativelanguage.googleapis.com"
        ).rstrip("/")
        try:
            self.max_retries: int = max(0, int(os.environ.get("MAX_RETRIES", "3")))
        except ValueError:
            self.max_retries = 3
        self.debug: bool = _env_flag("DEBUG_MODE")
        # Seed phrase primed as the model's next turn so generation resumes in the thought phase
        self.start_of_thought: str = os.environ.get("START_OF_THOUGHT") or "Here's a"
        self.target_models: List[str] = _parse_models(os.environ.get("TARGET_MODELS", ""))
        try:
            self.keepalive_interval: float = float(
                os.environ.get("KEEPALIVE_INTERVAL", str(KEEPALIVE_INTERVAL_SECONDS))
            )
        except ValueError:
            self.keepalive_interval = KEEPALIVE_INTERVAL_SECONDS
        try:
            self.upstream_timeout: float = float(os.environ.get("UPSTREAM_TIMEOUT", "300"))
        except ValueError:
            self.upstream_timeout = 300.0
        # Enable HTTP/2 to the upstream when the h2 extra is installed.
        self.http2: bool = _env_flag("PROXY_HTTP2", "1")


settings = Settings()
