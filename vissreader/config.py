from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # Database
    database_url: str = Field(..., alias='DATABASE_URL')

    # Web
    web_host: str = Field('0.0.0.0', alias='WEB_HOST')
    web_port: int = Field(3000, alias='WEB_PORT')
    public_base_url: str = Field('http://localhost:3000', alias='PUBLIC_BASE_URL')
    app_deep_link_scheme: str = Field('vissreader', alias='APP_DEEP_LINK_SCHEME')

    # T-Bank acquiring
    tbank_api_url: str = Field('https://securepayments.tbank.ru/api/v1', alias='TBANK_API_URL')
    tbank_terminal_key: str = Field('', alias='TBANK_TERMINAL_KEY')
    tbank_password: str = Field('', alias='TBANK_PASSWORD')
    tbank_success_url: str = Field('', alias='TBANK_SUCCESS_URL')
    tbank_failure_url: str = Field('', alias='TBANK_FAILURE_URL')
    tbank_timeout_seconds: float = Field(30.0, alias='TBANK_TIMEOUT_SECONDS')
    tbank_poll_backoff_sequence: str = Field('1,2,4', alias='TBANK_POLL_BACKOFF_SEQUENCE')

    # Ledger
    welcome_bonus_tokens: int = Field(300, alias='WELCOME_BONUS_TOKENS')
    pricing_tiers_json: str = Field('', alias='PRICING_TIERS_JSON')

    # Payment watcher
    payment_expiry_hours: int = Field(24, alias='PAYMENT_EXPIRY_HOURS')
    payment_watch_enabled: bool = Field(True, alias='PAYMENT_WATCH_ENABLED')
    payment_watch_interval_seconds: int = Field(60, alias='PAYMENT_WATCH_INTERVAL_SECONDS')
    payment_watch_concurrency: int = Field(5, alias='PAYMENT_WATCH_CONCURRENCY')

    # Illustrations
    image_api_url: str = Field('https://api.laozhang.ai/v1', alias='IMAGE_API_URL')
    image_api_key: str = Field('', alias='IMAGE_API_KEY')
    image_model_default: str = Field('flux-kontext-pro', alias='IMAGE_MODEL_DEFAULT')
    image_cost_standard: int = Field(25, alias='IMAGE_COST_STANDARD')
    image_cost_economy: int = Field(5, alias='IMAGE_COST_ECONOMY')
    image_cache_size: int = Field(500, alias='IMAGE_CACHE_SIZE')
    image_timeout_seconds: float = Field(120.0, alias='IMAGE_TIMEOUT_SECONDS')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')

    def tbank_poll_backoff_list(self) -> List[float]:
        return [float(x.strip()) for x in self.tbank_poll_backoff_sequence.split(',') if x.strip()]

    def tbank_success_redirect(self) -> str:
        return self.tbank_success_url or f'{self.public_base_url.rstrip("/")}/api/payments/tbank/success'

    def tbank_failure_redirect(self) -> str:
        return self.tbank_failure_url or f'{self.public_base_url.rstrip("/")}/api/payments/tbank/failure'

    def image_cost_for_mode(self, mode: str | None) -> int:
        if (mode or '').strip().lower() in {'base', 'economy'}:
            return self.image_cost_economy
        return self.image_cost_standard


@lru_cache
def get_settings() -> Settings:
    return Settings()
