"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── MySQL (source of truth) ────────────────────────────────────────────
    mysql_host: str = "mysql"
    mysql_port: int = 3306
    mysql_user: str = "root"
    mysql_password: str = ""
    mysql_database: str = "community"
    # Any SQLAlchemy async URL; wins over the mysql_* fields when set
    database_url_override: Optional[str] = None

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+aiomysql://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
        )

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_enabled: bool = True
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_social_events: str = "social.events"

    # ── Outbox relay ───────────────────────────────────────────────────────
    outbox_batch_size: int = 200
    outbox_interval_seconds: float = 1.0

    # ── Counter reconciliation ─────────────────────────────────────────────
    reconcile_batch_size: int = 500
    reconcile_interval_seconds: float = 300.0

    # ── VIP marker ─────────────────────────────────────────────────────────
    vip_follower_threshold: int = 10_000

    # ── Follow listing ─────────────────────────────────────────────────────
    follow_list_default_limit: int = 20
    follow_list_max_limit: int = 100

    # ── Like cache ─────────────────────────────────────────────────────────
    like_set_ttl_seconds: int = 86400        # 24h membership sets
    like_count_ttl_seconds: int = 86400      # 24h counters
    like_lock_ttl_ms: int = 300              # counter-repair lock
    like_lock_backoff_seconds: float = 0.05  # wait before re-checking on contention
    like_count_second_delete_seconds: float = 0.5
    like_set_max_members: int = 5000         # larger posts are never cached as a set

    # ── Observability ──────────────────────────────────────────────────────
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "socialgraph-api"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
