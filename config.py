import os
from functools import lru_cache
from pathlib import Path

PARENT_DELETE_POLICIES = ("clear", "reject")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_anchor_day: int,
        auto_rollover: bool,
        parent_delete_policy: str,
        maintenance_time: str = "00:10",
        safety_interval_minutes: int = 60,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_anchor_day = default_anchor_day
        self.auto_rollover = auto_rollover
        self.parent_delete_policy = parent_delete_policy
        self.maintenance_hour, self.maintenance_minute = _parse_clock(maintenance_time)
        self.safety_interval_minutes = safety_interval_minutes

    @property
    def maintenance_time(self) -> str:
        return f"{self.maintenance_hour:02d}:{self.maintenance_minute:02d}"


def _parse_clock(value: str) -> tuple[int, int]:
    try:
        hour_text, minute_text = value.strip().split(":")
        hour, minute = int(hour_text), int(minute_text)
    except ValueError as exc:
        raise ValueError(f"Invalid maintenance time: {value}") from exc
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid maintenance time: {value}")
    return hour, minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDCYCLE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "spendcycle.db"
    database_url = os.getenv("SPENDCYCLE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SPENDCYCLE_TIMEZONE", "Europe/Rome")
    default_anchor_day = int(os.getenv("SPENDCYCLE_DEFAULT_ANCHOR_DAY", "1"))
    auto_rollover = _env_flag("SPENDCYCLE_AUTO_ROLLOVER")
    parent_delete_policy = (
        os.getenv("SPENDCYCLE_PARENT_DELETE_POLICY", "clear").strip().lower()
    )
    if parent_delete_policy not in PARENT_DELETE_POLICIES:
        raise ValueError(
            f"Unsupported parent delete policy: {parent_delete_policy}"
        )
    maintenance_time = os.getenv("SPENDCYCLE_MAINTENANCE_TIME", "00:10")
    safety_interval_minutes = int(
        os.getenv("SPENDCYCLE_SAFETY_INTERVAL_MINUTES", "60")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_anchor_day=default_anchor_day,
        auto_rollover=auto_rollover,
        parent_delete_policy=parent_delete_policy,
        maintenance_time=maintenance_time,
        safety_interval_minutes=safety_interval_minutes,
    )
