from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "Workspace Agent"
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = True
    log_max_value_chars: int = 2000

    # Storage: per-workspace SQLite files live under <data_root>/vm/
    data_root: Path = Path("./data")

    # Anthropic
    anthropic_api_key: str = ""
    agent_model: str = "claude-sonnet-4-20250514"
    agent_max_tokens: int = 8192
    agent_temperature: float = 0.2

    # Turn loop
    agent_max_steps: int = 25
    llm_timeout_seconds: float = 120.0
    llm_max_retries: int = 3
    tool_timeout_seconds: float = 60.0
    task_timeout_seconds: float = 300.0
    max_task_depth: int = 2
    batch_max_calls: int = 25
    event_buffer_size: int = 256

    # Restrict the planning phase to read-only tools + create_plan
    plan_mode: bool = False
    # Pause turns on tools flagged requires_confirmation until the user approves
    confirm_destructive_tools: bool = False

    # VM runtime
    vm_pool_size: int = 10
    vm_call_time_limit_seconds: float = 10.0
    vm_memory_limit_bytes: int = 64 * 1024 * 1024

    # Sessions
    session_ttl_seconds: int = 1800
    session_reap_interval_seconds: int = 60
    session_max_history: int = 200

    @property
    def vm_root(self) -> Path:
        return self.data_root / "vm"


@lru_cache
def get_settings() -> Settings:
    return Settings()
