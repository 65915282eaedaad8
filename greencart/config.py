import logging
from typing import Any, ClassVar, FrozenSet

from pydantic_settings import BaseSettings, SettingsConfigDict

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./greencart.db"

    # Database pool (applies to client/server DBs like Postgres; SQLite uses NullPool)
    DB_POOL_PRE_PING: bool = True
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    # JWT
    # NOTE: This default is intentionally insecure and must never be used outside dev/test.
    DEFAULT_JWT_SECRET: ClassVar[str] = "dev-secret-change-me-please-32chars!!"
    JWT_SECRET: str = DEFAULT_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # Application
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # Environment
    # Used for guardrails. Suggested values: dev|staging|prod.
    ENV: str = "dev"

    # Rate limiting (in-memory, best-effort)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_REQUESTS_PER_WINDOW: int = 120

    # Observability
    METRICS_ENABLED: bool = True

    # Admin token: acts as an "admin" actor for simulation endpoints (CLI/scripts).
    # NOTE: This default is intentionally insecure and must never be used outside dev/test.
    DEFAULT_ADMIN_TOKEN: ClassVar[str] = "dev-admin-token-change-me"
    ADMIN_TOKEN: str = DEFAULT_ADMIN_TOKEN

    # --- Simulation runner ---
    # One tick per wall-clock second; tests shrink the interval to 0.
    SIMULATION_TICK_INTERVAL_SEC: float = 1.0
    SIMULATION_TICKS_PER_MINUTE: int = 60
    SIMULATION_MAX_DURATION_MINUTES: int = 1440

    # Demo probabilities (per tick).
    SIMULATION_DELIVERY_PROBABILITY: float = 0.05
    SIMULATION_ON_TIME_PROBABILITY: float = 0.7
    SIMULATION_EVENT_PROBABILITY: float = 0.01
    SIMULATION_BREAKDOWN_SHARE: float = 0.3

    # Profit model (illustrative, not configurable per run).
    SIMULATION_REVENUE_PER_DELIVERY: float = 50.0
    SIMULATION_COST_PER_KM: float = 0.5

    SIMULATION_PROGRESS_LOG_EVERY_TICKS: int = 10
    # Mirror running counters into the run record every N ticks (0 = only at finalization).
    SIMULATION_PERSIST_COUNTS_EVERY_TICKS: int = 10

    # Per-subscriber queue bound; overflow drops messages instead of blocking ticks.
    SIMULATION_SUBSCRIBER_QUEUE_MAX: int = 1000

    # --- Guardrails ---
    # Fail-fast on obviously insecure secrets outside dev/test.
    _SAFE_ENVS: ClassVar[FrozenSet[str]] = frozenset({"dev", "development", "test", "testing"})
    _UNSAFE_PLACEHOLDERS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "change-me-in-production",
            "change-me",
            "changeme",
            "",
        }
    )

    def model_post_init(self, __context: Any) -> None:
        # Runs on every Settings() instantiation (including module-level `settings = Settings()`).
        self._guardrail_default_secrets()

    def _guardrail_default_secrets(self) -> None:
        env = (self.ENV or "").strip().lower()
        if env in self._SAFE_ENVS:
            return

        jwt_secret = (self.JWT_SECRET or "").strip()
        admin_token = (self.ADMIN_TOKEN or "").strip()

        def _is_unsafe(value: str, *, default_value: str) -> bool:
            v = (value or "").strip()
            vl = v.lower()
            if v == default_value:
                return True
            if vl in self._UNSAFE_PLACEHOLDERS:
                return True
            if "change-me" in vl:
                return True
            return False

        problems: list[str] = []
        if _is_unsafe(jwt_secret, default_value=self.DEFAULT_JWT_SECRET):
            problems.append("JWT_SECRET")
        if _is_unsafe(admin_token, default_value=self.DEFAULT_ADMIN_TOKEN):
            problems.append("ADMIN_TOKEN")

        if problems:
            fields = ", ".join(problems)
            raise RuntimeError(
                "Refusing to start with insecure default/placeholder secrets outside dev/test: "
                f"{fields}. "
                f"Got ENV={self.ENV!r}. "
                "Set secure values via environment variables (JWT_SECRET / ADMIN_TOKEN), "
                "or run with ENV=dev/test."
            )


settings = Settings()


def get_settings() -> Settings:
    """Return the global settings instance.

    Provided as a callable for FastAPI Depends() and test mocking convenience.
    """
    return settings
