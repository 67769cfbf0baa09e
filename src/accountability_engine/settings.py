from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Market calendar
    timezone: str = "Asia/Kolkata"
    market_open: str = "09:15"
    market_close: str = "15:30"
    holidays_path: Path = Path("config/market_holidays.yaml")

    # Notification scheduler
    notify_tick_minutes: int = Field(default=5, ge=1, le=60)
    repeat_interval_minutes: int = Field(default=30, ge=1, le=480)
    delivery_timeout_seconds: float = Field(default=10.0, ge=1, le=120)

    # Admission / generation
    max_signals_per_batch: int = Field(default=5, ge=1, le=50)
    max_signals_per_day: int = Field(default=3, ge=1, le=100)
    fallback_target_pct: float = Field(default=0.003, ge=0, le=0.1)
    fallback_target_floor: float = Field(default=100.0, ge=0, le=1_000_000)
    fallback_target_confidence: int = Field(default=30, ge=0, le=100)

    # Accountability
    scorecard_lookback_days: int = Field(default=7, ge=1, le=90)
    scorecard_max_signals: int = Field(default=10, ge=1, le=200)
    carryover_lookback_trading_days: int = Field(default=5, ge=1, le=30)

    # Job schedule (calendar timezone)
    expiry_sweep_hour: int = Field(default=9, ge=0, le=23)
    expiry_sweep_minute: int = Field(default=0, ge=0, le=59)
    morning_targets_hour: int = Field(default=9, ge=0, le=23)
    morning_targets_minute: int = Field(default=16, ge=0, le=59)
    signal_generation_times_csv: str = "09:30,13:00"
    service_heartbeat_seconds: int = Field(default=15, ge=5, le=300)

    # Telegram delivery
    telegram_bot_token: str = ""
    telegram_default_chat_id: str = ""
    telegram_api_base_url: str = "https://api.telegram.org"

    # Recommendation oracle (OpenAI-compatible chat completions)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    openai_timeout_seconds: int = Field(default=90, ge=5, le=300)
    openai_max_output_tokens: int = Field(default=1000, ge=64, le=4096)

    # Price lookups
    yahoo_prices_enabled: bool = True
    yahoo_symbol_suffix: str = ".NS"

    log_level: str = "INFO"
    log_file: Path | None = None
    db_path: Path = Path("data/accountability.sqlite3")
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8501, ge=1, le=65535)

    @model_validator(mode="after")
    def validate_market_hours(self) -> "Settings":
        open_parts = self.market_open.split(":")
        close_parts = self.market_close.split(":")
        if len(open_parts) != 2 or len(close_parts) != 2:
            raise ValueError("MARKET_OPEN and MARKET_CLOSE must be HH:MM")
        if (int(open_parts[0]), int(open_parts[1])) >= (int(close_parts[0]), int(close_parts[1])):
            raise ValueError("MARKET_OPEN must be earlier than MARKET_CLOSE")
        return self

    def signal_generation_times(self) -> list[tuple[int, int]]:
        times: list[tuple[int, int]] = []
        for item in self.signal_generation_times_csv.split(","):
            item = item.strip()
            if not item:
                continue
            hour, minute = item.split(":", 1)
            times.append((int(hour), int(minute)))
        return times


settings = Settings()
