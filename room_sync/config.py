from pydantic.v1 import BaseSettings


class Settings(BaseSettings):
    # OTEL
    OTEL_ENABLED: bool = True
    OTEL_SERVICE_NAME: str = "room-sync-service"
    OTEL_OTLP_GRPC_ENDPOINT: str = "otel-collector:4317"

    # Backing store ("redis" | "memory")
    BACKING_STORE: str = "redis"

    # Redis
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_MAX_CONNECTIONS: int = 40

    # Typing
    TYPING_INACTIVITY_TIMEOUT: float = 2.0
    TYPING_STALE_AFTER: float = 10.0
    TYPING_SWEEP_INTERVAL: float = 1.0

    # ROUTER
    MAX_MESSAGE_SIZE: int = 10 * 1024  # 10KB

    # Connection Manager
    CONNECTION_MANAGER_MAX_TOTAL_CONNECTIONS: int = 3000
    CONNECTION_RATE_LIMIT_PER_SEC: int = 10
    CONNECTION_SEND_TIMEOUT: float = 0.1

    class Config:
        env_file = ".env"
