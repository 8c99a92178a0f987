import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # 数据库配置
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "123456")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "flash_sale")

    # Redis 配置
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    # 多个 Redlock 节点用逗号分隔
    REDIS_HOSTS: str = os.getenv("REDIS_HOSTS", "")

    # 秒杀预占配置
    RESERVATION_HOLD_SECONDS: int = 300
    MAX_QUANTITY_PER_REQUEST: int = 10
    DEFAULT_PER_USER_LIMIT: int = 2
    DEFAULT_EARLY_ACCESS_MINUTES: int = 30

    # 过期清理配置
    SWEEP_INTERVAL_SECONDS: float = 30.0
    SWEEP_BATCH_SIZE: int = 500
    SWEEP_LOCK_TTL_MS: int = 25000
    RESERVATION_RETENTION_HOURS: int = 24
    STATUS_REFRESH_SECONDS: float = 30.0

    # 库存读缓存的最大陈旧时间
    STOCK_CACHE_TTL_SECONDS: int = 5

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+psycopg://"
            f"{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

settings = Settings()
