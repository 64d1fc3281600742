from decimal import Decimal
from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Configurações globais do CareLedger.
    Lê automaticamente variáveis do arquivo .env.
    """

    # Configuração base
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Projeto
    project_name: str = "CareLedger Billing API"
    api_v1_str: str = "/api/v1"
    debug: bool = False

    # Banco de dados
    database_url: str = "sqlite:///./careledger.db"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Faturamento
    billing_currency: str = "INR"
    billing_tax_rate: Decimal = Decimal("0")
    billing_invoice_due_days: int = 30
    billing_invoice_number_prefix: str = "INV"
    billing_trial_days: int = 30
    billing_expiry_warning_days: int = 7

    # Medição de uso
    usage_soft_limit_ratio: Decimal = Decimal("0.8")


@lru_cache
def get_settings() -> Settings:
    """Retorna a instância de configurações globais (cacheada)."""
    return Settings()


settings = get_settings()
