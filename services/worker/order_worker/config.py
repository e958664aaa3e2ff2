"""
Order Worker — 設定

すべての設定値は環境変数から読み込む（他のサービスと同じ方針）。
値の検証は pydantic に任せ、不正な値は起動時に ValidationError となる。
"""

import os

from pydantic import BaseModel, Field, model_validator

# httpx のタイムアウトは connect / read / write の各フェーズに個別にかかる
HTTP_TIMEOUT_PHASES = 3
# 保存など、外部 API 以外にかかる時間の見込み
LOCK_TTL_MARGIN = 10.0


class WorkerConfig(BaseModel):
    """ワーカー全体の設定値"""

    # ── Kafka ────────────────────────────────────
    kafka_bootstrap_servers: str = "localhost:9092"
    orders_topic: str = "orders"
    group_id: str = "order-worker"
    auto_offset_reset: str = "earliest"
    max_poll_records: int = Field(10, gt=0)
    concurrency: int = Field(3, gt=0)
    dead_letter_topic: str | None = None
    redelivery_attempts: int = Field(2, ge=0)
    redelivery_delay: float = Field(1.0, ge=0)

    # ── 外部 API ─────────────────────────────────
    api_base_url: str = "http://localhost:8080"
    api_timeout: float = Field(5.0, gt=0)
    api_max_attempts: int = Field(3, gt=0)
    api_backoff: float = Field(1.0, ge=0)
    api_max_backoff: float = Field(10.0, ge=0)

    # ── 分散ロック (Redis) ───────────────────────
    redis_host: str = "localhost"
    redis_port: int = 6379
    lock_ttl: float = Field(120.0, gt=0)
    lock_retry_interval: float = Field(0.1, ge=0)
    lock_max_attempts: int = Field(3, gt=0)

    # ── 永続化 ───────────────────────────────────
    database_url: str

    log_level: str = "INFO"

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}"

    def fetch_worst_case(self) -> float:
        """外部 API 1 件の取得にかかり得る最大秒数（全試行 + バックオフ）"""
        requests = self.api_max_attempts * self.api_timeout * HTTP_TIMEOUT_PHASES
        backoffs = sum(
            min(self.api_backoff * 2 ** (n - 1), self.api_max_backoff)
            for n in range(1, self.api_max_attempts)
        )
        return requests + backoffs

    def pipeline_worst_case(self) -> float:
        """
        ロック保持中の最悪処理時間。

        顧客取得のあとに商品の並行取得が続くので、取得 2 回分が直列にかかる。
        """
        return 2 * self.fetch_worst_case() + LOCK_TTL_MARGIN

    @model_validator(mode="after")
    def check_lock_ttl(self) -> "WorkerConfig":
        # TTL が処理時間より短いと、処理中にロックが切れて排他が失われる
        worst_case = self.pipeline_worst_case()
        if self.lock_ttl < worst_case:
            raise ValueError(
                f"lock_ttl ({self.lock_ttl}s) must be at least the worst-case "
                f"pipeline duration ({worst_case}s)"
            )
        return self


# 環境変数名 → WorkerConfig のフィールド名
_ENV_FIELDS = {
    "KAFKA_BOOTSTRAP_SERVERS": "kafka_bootstrap_servers",
    "KAFKA_ORDERS_TOPIC": "orders_topic",
    "KAFKA_GROUP_ID": "group_id",
    "KAFKA_AUTO_OFFSET_RESET": "auto_offset_reset",
    "KAFKA_MAX_POLL_RECORDS": "max_poll_records",
    "LISTENER_CONCURRENCY": "concurrency",
    "DEAD_LETTER_TOPIC": "dead_letter_topic",
    "REDELIVERY_ATTEMPTS": "redelivery_attempts",
    "REDELIVERY_DELAY_SECONDS": "redelivery_delay",
    "EXTERNAL_API_BASE_URL": "api_base_url",
    "EXTERNAL_API_TIMEOUT_SECONDS": "api_timeout",
    "EXTERNAL_API_RETRY_MAX_ATTEMPTS": "api_max_attempts",
    "EXTERNAL_API_RETRY_BACKOFF_SECONDS": "api_backoff",
    "EXTERNAL_API_RETRY_MAX_BACKOFF_SECONDS": "api_max_backoff",
    "REDIS_HOST": "redis_host",
    "REDIS_PORT": "redis_port",
    "LOCK_TTL_SECONDS": "lock_ttl",
    "LOCK_RETRY_INTERVAL_SECONDS": "lock_retry_interval",
    "LOCK_MAX_ATTEMPTS": "lock_max_attempts",
    "DATABASE_URL": "database_url",
    "LOG_LEVEL": "log_level",
}


def load_config(environ: dict[str, str] | None = None) -> WorkerConfig:
    """
    環境変数から設定を読み込む。

    未設定の変数はデフォルト値を使う。DATABASE_URL だけは必須。
    空文字列は「未設定」とみなす。
    """
    env = os.environ if environ is None else environ
    values = {
        field: env[name]
        for name, field in _ENV_FIELDS.items()
        if env.get(name)
    }
    return WorkerConfig(**values)
