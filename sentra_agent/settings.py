"""Centralised settings for Sentra Agent, loaded from env / .env."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SentraSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- general ---
    app_name: str = "Sentra"
    log_level: str = "INFO"
    log_file: Path | None = None

    # --- transport (WebSocket) ---
    ws_host: str = "localhost"
    ws_port: int = 6702
    ws_timeout: int = 10000  # ms, per send_and_wait request
    ws_reconnect_interval_ms: int = 10000
    ws_max_reconnect_attempts: int = 60

    # --- main model ---
    api_key: str = ""
    api_base_url: str = ""
    main_ai_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 4096

    # --- response format / retry ---
    max_response_retries: int = 2
    max_response_tokens: int = 260
    token_count_model: str = "gpt-4o-mini"
    enable_strict_format_check: bool = True
    enable_format_repair: bool = True
    repair_ai_model: str = ""

    # --- bundling ---
    bundle_window_ms: int = 5000
    bundle_max_ms: int = 15000

    # --- reply policy (desire model) ---
    reply_threshold: float = 0.65
    reply_base_desire: float = 0.35
    reply_ignored_step: float = 0.08
    reply_question_bonus: float = 0.15
    reply_fast_pace_penalty: float = 0.10

    # --- reply intervention ---
    enable_reply_intervention: bool = False
    reply_intervention_model: str = ""
    reply_intervention_timeout: int = 2000  # ms
    reply_intervention_only_near_threshold: bool = False
    reply_intervention_threshold_distance: float = 0.15
    reply_intervention_desire_reduction: float = 0.10

    # --- history ---
    max_conversation_pairs: int = 20
    max_pending_messages: int = 50

    # --- file-system paths ---
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".sentra")
    message_cache_ttl_hours: int = 24
    agent_presets_dir: Path = Path("./agent-presets")
    agent_preset_file: str = "default.txt"
    system_prompt: str = ""

    @property
    def ws_url(self) -> str:
        return f"ws://{self.ws_host}:{self.ws_port}"

    @property
    def request_timeout_seconds(self) -> float:
        return self.ws_timeout / 1000

    @property
    def reconnect_interval_seconds(self) -> float:
        return self.ws_reconnect_interval_ms / 1000

    @property
    def bundle_window_seconds(self) -> float:
        return self.bundle_window_ms / 1000

    @property
    def bundle_max_seconds(self) -> float:
        return self.bundle_max_ms / 1000

    @property
    def intervention_timeout_seconds(self) -> float:
        return self.reply_intervention_timeout / 1000

    @property
    def intervention_enabled(self) -> bool:
        """Intervention only runs when switched on *and* a model is configured."""
        return self.enable_reply_intervention and bool(self.reply_intervention_model)

    @property
    def message_cache_dir(self) -> Path:
        return self.state_dir / "message-cache"


@lru_cache
def get_settings() -> SentraSettings:
    s = SentraSettings()
    s.state_dir.mkdir(parents=True, exist_ok=True)
    return s
