from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    db_path: str = "/data/webhooks.db"
    log_level: str = "INFO"
    webhook_timeout: float = 10.0
    webhook_user_agent: str = "EduCommunity-Webhook/1.0"
    response_body_limit: int = 5000
    admin_token: str | None = None
    mercadopago_access_token: str | None = None
    mercadopago_api_url: str = "https://api.mercadopago.com"
    mercadopago_webhook_secret: str | None = None
    mercadopago_skip_signature_validation: bool = False
    mercadopago_notification_path: str = "/webhooks/mercadopago"

    @field_validator("mercadopago_access_token")
    @classmethod
    def _check_token_prefix(cls, value: str | None) -> str | None:
        if value and not value.startswith(("TEST-", "APP_USR-")):
            raise ValueError("mercadopago_access_token must start with TEST- or APP_USR-")
        return value or None
