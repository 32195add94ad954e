import logging
import os
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger("authproxy.config")


def split_and_filter(value: str, delimiter: str = ",") -> List[str]:
    """Split a delimited env value, dropping blanks."""
    if not value:
        return []
    return [part.strip() for part in value.split(delimiter) if part.strip()]


class Settings(BaseSettings):
    app_name: str = "Logs Auth Proxy"

    host: str = "0.0.0.0"
    port: int = 8081
    log_level: str = "INFO"

    elasticsearch_url: str = "http://elasticsearch:9200"
    elasticsearch_username: Optional[str] = None
    elasticsearch_password: Optional[str] = None
    elasticsearch_timeout: float = 10.0

    rsa_public_key: str = ""
    jwt_secret: str = ""
    insecure_skip_verify: bool = False
    allowed_issuers: str = ""
    allowed_audiences: str = ""
    allow_customer_id: bool = True

    tenant_field: str = "accountId"
    batch_size: int = 500
    flush_interval: float = 2.0
    queue_size: int = 10000
    flush_workers: int = 5
    shutdown_timeout: float = 10.0
    bulk_max_retries: int = 2
    bulk_retry_delay: float = 0.5
    data_retention: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def issuers(self) -> List[str]:
        return split_and_filter(self.allowed_issuers)

    @property
    def audiences(self) -> List[str]:
        return split_and_filter(self.allowed_audiences)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def log_environment_status():
    """Logs the presence of critical environment variables without leaking secrets."""
    logger.info("--- AUTH PROXY ENVIRONMENT STATUS ---")
    vars_to_check = [
        "PORT",
        "ELASTICSEARCH_URL",
        "ELASTICSEARCH_USERNAME",
        "RSA_PUBLIC_KEY",
        "JWT_SECRET",
        "INSECURE_SKIP_VERIFY",
        "ALLOWED_ISSUERS",
        "ALLOWED_AUDIENCES",
        "BATCH_SIZE",
        "FLUSH_INTERVAL",
        "QUEUE_SIZE",
    ]
    for var in vars_to_check:
        val = os.environ.get(var)
        status = "SET (Length: " + str(len(val)) + ")" if val else "NOT SET / DEFAULT"
        logger.info(f"{var}: {status}")
    logger.info("-------------------------------------")
