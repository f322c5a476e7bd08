from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='paygate_api_')

    notification_timeout: float = Field(default=5.0)
    handlers_notification_loop_sleep_duration: float = Field(default=1.0)
    notification_max_attempts: int = Field(default=10)

    # Event amount may differ from the stored one by this much before it is flagged
    amount_tolerance: Decimal = Field(default=Decimal('0.01'))

    # Shops whose payout snapshot is kept in memory
    payout_cache_size: int = Field(default=1024)


class PollingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='paygate_polling_')

    # Waits between consecutive status checks: 1, 2, 7 and 12 minutes, then `repeat_interval`
    backoff_intervals: list[float] = Field(default=[60.0, 120.0, 420.0, 720.0])
    repeat_interval: float = Field(default=3600.0)
    expiry_horizon_days: float = Field(default=5.0)
    status_query_timeout: float = Field(default=30.0)
    polled_gateways: list[str] = Field(default=['cointopay'])


class PostgresSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='paygate_postgres_')

    host: str = Field(default='127.0.0.1')
    port: int = Field(default=5432)
    user: str
    password: str
    db: str

    def get_url(self, driver: str | None, db: str | None = None):
        scheme = f'postgresql{f"+{driver}" if driver else ""}'
        return f'{scheme}://{self.user}:{self.password}@{self.host}:{self.port}/{db or self.db}'


class KafkaSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='paygate_kafka_')

    bootstrap_servers: str = Field(default='localhost:19092')
    payment_topic: str = Field(default='payment')


class GatewaySecrets(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='allow', env_prefix='paygate_gateway_')

    plisio_secret_key: str | None = None
    noda_signature_key: str | None = None
    rapyd_webhook_secret: str | None = None
    cointopay_webhook_secret: str | None = None
    klyme_webhook_secret: str | None = None

    cointopay_status_url: str = Field(default='https://tesoft.uk/gateway/cointopay/status.php')
    connection_timeout_sec: float = 60.0


settings = Settings()
polling_settings = PollingSettings()
pg_settings = PostgresSettings()  # type: ignore
kafka_settings = KafkaSettings()
gateway_secrets = GatewaySecrets()
