from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_path: str = "data/arena.db"
    db_timeout_seconds: float = 10.0

    # Sessions
    bcrypt_rounds: int = 12
    # Accounts registered under these names get the admin role
    admin_usernames: list[str] = []
    session_ttl_hours: int = 24
    session_sweep_minutes: int = 5

    # Sandboxes
    sandbox_ttl_minutes: int = 120
    sandbox_max_leases: int = 50
    sandbox_max_lifetime_minutes: int = 480
    sandbox_sweep_minutes: int = 5
    sandbox_memory_limit: str = "512m"
    sandbox_pids_limit: int = 128
    sandbox_default_port: int = 5000
    sandbox_http_check: bool = True
    docker_timeout_seconds: int = 30
    docker_network: str = "arena-ctf-net"

    # Flag submissions
    rate_limit_window_seconds: int = 60
    rate_limit_max_submissions: int = 10
    max_flag_length: int = 1024

    # Scoring
    scoring_difficulty_multiplier: float = 1.5
    scoring_time_bonus: bool = True
    first_blood_ratio: float = 0.1
    award_reconcile_seconds: int = 60

    # Audit log
    audit_retention_days: int = 30
    audit_cleanup_hours: int = 24

    class Config:
        env_file = ".env"


settings = Settings()

# Ensure data directory exists
data_dir = Path(settings.database_path).parent
data_dir.mkdir(parents=True, exist_ok=True)
