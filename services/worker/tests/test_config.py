import pytest
from pydantic import ValidationError

from order_worker.config import load_config


class TestLoadConfig:
    def test_defaults(self):
        config = load_config({"DATABASE_URL": "postgresql+asyncpg://localhost/orders"})
        assert config.orders_topic == "orders"
        assert config.group_id == "order-worker"
        assert config.lock_ttl == 120.0
        assert config.lock_ttl >= config.pipeline_worst_case()
        assert config.lock_max_attempts == 3
        assert config.api_max_attempts == 3
        assert config.dead_letter_topic is None
        assert config.redis_url == "redis://localhost:6379"

    def test_environment_overrides(self):
        config = load_config(
            {
                "DATABASE_URL": "sqlite+aiosqlite:///orders.db",
                "KAFKA_BOOTSTRAP_SERVERS": "kafka:29092",
                "LISTENER_CONCURRENCY": "8",
                "EXTERNAL_API_TIMEOUT_SECONDS": "2.5",
                "LOCK_RETRY_INTERVAL_SECONDS": "0.25",
                "REDIS_HOST": "redis",
                "REDIS_PORT": "6380",
                "DEAD_LETTER_TOPIC": "orders.dlq",
            }
        )
        assert config.kafka_bootstrap_servers == "kafka:29092"
        assert config.concurrency == 8
        assert config.api_timeout == 2.5
        assert config.lock_retry_interval == 0.25
        assert config.redis_url == "redis://redis:6380"
        assert config.dead_letter_topic == "orders.dlq"

    def test_empty_values_use_defaults(self):
        config = load_config({"DATABASE_URL": "sqlite+aiosqlite://", "DEAD_LETTER_TOPIC": ""})
        assert config.dead_letter_topic is None

    def test_database_url_is_required(self):
        with pytest.raises(ValidationError):
            load_config({})

    def test_invalid_concurrency(self):
        with pytest.raises(ValidationError):
            load_config({"DATABASE_URL": "sqlite+aiosqlite://", "LISTENER_CONCURRENCY": "0"})


class TestLockTtl:
    def test_ttl_shorter_than_worst_case_is_rejected(self):
        # 顧客・商品の取得が最悪ケースで 96s かかる設定に 30s のロックは不可
        with pytest.raises(ValidationError, match="lock_ttl"):
            load_config({"DATABASE_URL": "sqlite+aiosqlite://", "LOCK_TTL_SECONDS": "30"})

    def test_worst_case_covers_every_attempt_and_backoff(self):
        config = load_config({"DATABASE_URL": "sqlite+aiosqlite://"})
        # 3 試行 × 5s × 3 フェーズ + バックオフ 1s + 2s
        assert config.fetch_worst_case() == 48.0
        # 顧客取得 → 商品取得の 2 段 + 余裕 10s
        assert config.pipeline_worst_case() == 106.0

    def test_shorter_api_budget_allows_shorter_ttl(self):
        config = load_config(
            {
                "DATABASE_URL": "sqlite+aiosqlite://",
                "EXTERNAL_API_TIMEOUT_SECONDS": "1",
                "EXTERNAL_API_RETRY_MAX_ATTEMPTS": "2",
                "LOCK_TTL_SECONDS": "30",
            }
        )
        # 2 × (2 × 1 × 3 + 1) + 10 = 24
        assert config.pipeline_worst_case() == 24.0
        assert config.lock_ttl == 30.0
