"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./fightclub.db"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]  # Next.js dev server

    # Internal routes (realtime engine, jobs, admin panel)
    internal_api_key: str = "dev-internal-key"
    instance_id: str = ""  # Used in settlement lock process ids; random if empty

    # Exchange adapter; mock mode when empty
    exchange_base_url: str = ""
    exchange_timeout_seconds: float = 10.0

    # Anti-cheat thresholds
    anti_cheat_zero_pnl_threshold_usdc: float = 0.01
    anti_cheat_min_notional_per_player: float = 10.0
    anti_cheat_max_matchups_per_24h: int = 10
    anti_cheat_matchup_window_hours: float = 24.0
    anti_cheat_ip_same_pair_threshold: int = 2

    # Settlement triggers
    scheduler_enabled: bool = True
    reconcile_interval_seconds: int = 30
    reconcile_buffer_seconds: int = 60  # Grace period past fight end before the job settles

    model_config = {"env_prefix": "TFC_", "env_file": ".env"}


settings = Settings()
