from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    broker_host: str = Field(..., validation_alias="BROKER_HOST")
    broker_port: int = Field(..., validation_alias="BROKER_PORT")
    broker_user: str = Field(..., validation_alias="BROKER_USER")
    broker_password: str = Field(..., validation_alias="BROKER_PASSWORD")

    queue_name: str = Field(..., validation_alias="QUEUE_NAME")
    dead_letter_queue_name: str = Field(..., validation_alias="DEAD_LETTER_QUEUE_NAME")
    queue_max_length: int = Field(10_000, validation_alias="QUEUE_MAX_LENGTH")

    # Coordinator-side budget. A failed delivery with attempt_count >= max_attempts gets no
    # delay override and is left for the queue to divert to the dead-letter queue.
    max_attempts: int = Field(3, ge=1, validation_alias="MAX_ATTEMPTS")
    # Queue-side redelivery threshold before routing to the dead-letter queue.
    max_receive_count: int = Field(3, ge=1, validation_alias="MAX_RECEIVE_COUNT")

    backoff_base_delay_seconds: int = Field(10, ge=0, validation_alias="BACKOFF_BASE_DELAY_SECONDS")
    backoff_growth_factor: float = Field(1.5, ge=1.0, validation_alias="BACKOFF_GROWTH_FACTOR")
    backoff_max_delay_seconds: int = Field(900, ge=0, validation_alias="BACKOFF_MAX_DELAY_SECONDS")
    default_redelivery_delay_seconds: int = Field(30, ge=0, validation_alias="DEFAULT_REDELIVERY_DELAY_SECONDS")

    batch_size: int = Field(10, ge=1, validation_alias="BATCH_SIZE")
    batch_deadline_seconds: float | None = Field(None, gt=0, validation_alias="BATCH_DEADLINE_SECONDS")
    poll_interval_seconds: float = Field(1.0, ge=0, validation_alias="POLL_INTERVAL_SECONDS")
    processing_timeout_seconds: float = Field(30.0, gt=0, validation_alias="PROCESSING_TIMEOUT_SECONDS")
    processing_concurrency: int = Field(1, ge=1, validation_alias="PROCESSING_CONCURRENCY")

    override_max_attempts: int = Field(3, ge=1, validation_alias="OVERRIDE_MAX_ATTEMPTS")
    override_initial_backoff_seconds: float = Field(0.2, ge=0, validation_alias="OVERRIDE_INITIAL_BACKOFF_SECONDS")
    override_max_backoff_seconds: float = Field(2.0, ge=0, validation_alias="OVERRIDE_MAX_BACKOFF_SECONDS")

    queue_backend: str = Field("rabbitmq", validation_alias="QUEUE_BACKEND")
    processor_backend: str = Field("simulated", validation_alias="PROCESSOR_BACKEND")
    repository_backend: str = Field("mongo", validation_alias="REPOSITORY_BACKEND")

    simulated_failure_rate: float = Field(0.3, ge=0.0, le=1.0, validation_alias="SIMULATED_FAILURE_RATE")
    simulated_min_duration_seconds: float = Field(1.0, ge=0, validation_alias="SIMULATED_MIN_DURATION_SECONDS")
    simulated_max_duration_seconds: float = Field(3.0, ge=0, validation_alias="SIMULATED_MAX_DURATION_SECONDS")
    processor_endpoint_url: str = Field("", validation_alias="PROCESSOR_ENDPOINT_URL")
    processor_connect_timeout_seconds: float = Field(5.0, validation_alias="PROCESSOR_CONNECT_TIMEOUT_SECONDS")
    processor_read_timeout_seconds: float = Field(15.0, validation_alias="PROCESSOR_READ_TIMEOUT_SECONDS")

    database_host: str = Field("localhost", validation_alias="DATABASE_HOST")
    database_port: int = Field(27017, validation_alias="DATABASE_PORT")
    database_user: str = Field("", validation_alias="DATABASE_USER")
    database_password: str = Field("", validation_alias="DATABASE_PASSWORD")
    database_name: str = Field("task_pipeline", validation_alias="DATABASE_NAME")
    database_collection: str = Field("terminal_failures", validation_alias="DATABASE_COLLECTION")
    database_connection_timeout_ms: int = Field(5000, validation_alias="DATABASE_CONNECTION_TIMEOUT_MS")

    initial_backoff_seconds: float = Field(1.0, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(30.0, validation_alias="MAX_BACKOFF_SECONDS")
    max_connection_attempts: int = Field(10, ge=1, validation_alias="MAX_CONNECTION_ATTEMPTS")
    backoff_multiplier: float = Field(2.0, validation_alias="BACKOFF_MULTIPLIER")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(False, validation_alias="LOG_JSON")

    @model_validator(mode="after")
    def _check_retry_budget(self) -> "Settings":
        # Past max_receive_count the queue has already diverted the message, so a larger
        # coordinator budget would keep scheduling delays for messages that never return.
        if self.max_attempts > self.max_receive_count:
            raise ValueError(
                f"MAX_ATTEMPTS ({self.max_attempts}) must not exceed MAX_RECEIVE_COUNT ({self.max_receive_count})"
            )
        if self.backoff_base_delay_seconds > self.backoff_max_delay_seconds:
            raise ValueError("BACKOFF_BASE_DELAY_SECONDS must not exceed BACKOFF_MAX_DELAY_SECONDS")
        if self.simulated_min_duration_seconds > self.simulated_max_duration_seconds:
            raise ValueError("SIMULATED_MIN_DURATION_SECONDS must not exceed SIMULATED_MAX_DURATION_SECONDS")
        return self
