from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://app:devpassword@db:5432/memecraft"
    REDIS_URL: str = "redis://redis:6379/0"

    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"

    PAYMENT_PROVIDER: str = "mock"
    DEFAULT_CURRENCY: str = "RUB"
    PAYMENT_RETURN_URL: str = "http://localhost:3000/payment/success"
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    YOOKASSA_SHOP_ID: str = ""
    YOOKASSA_API_KEY: str = ""
    YOOKASSA_WEBHOOK_SECRET: str = ""

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    MOCK_PAYMENT_ERROR: bool = False
    MOCK_PAYMENT_DELAY_MS: int = 0
    MOCK_WEBHOOK_SECRET: str = "mock-secret-key"

    # Only honoured when APP_ENV == "development"
    PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS: bool = False

    APP_ENV: str = "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def allow_unsigned_webhooks(self) -> bool:
        return self.APP_ENV == "development" and self.PAYMENTS_ALLOW_UNSIGNED_WEBHOOKS


settings = Settings()
