from functools import lru_cache
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""
    database_auto_create: bool = False

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    enable_review_queue: bool = Field(
        default=True,
        validation_alias=AliasChoices("ENABLE_REVIEW_QUEUE"),
    )
    review_page_size: int = Field(default=10, ge=1)
    review_timezone: str = "America/Sao_Paulo"
    review_country_code: str = "55"

    # Business policy knobs for the heuristic triage.
    triage_sale_wins_ties: bool = True
    triage_default_entry_type: str = "expense"

    ai_review_provider: str = Field(
        default="",
        validation_alias=AliasChoices("AI_REVIEW_PROVIDER", "AI_PROVIDER"),
    )
    ai_review_model: str = ""
    ai_timeout_seconds: float = 8.0
    ai_temperature: float = 0.1
    ai_max_tokens: int = 1024
    ai_debug_store_raw: bool = False
    ai_allowed_providers_raw: str = Field(
        default="groq,claude,openai,mock",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )

    groq_api_key: str = ""
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: list[str] = Field(
        default_factory=lambda: [
            "phone",
            "remote_jid",
            "email",
            "address",
            "tax_id",
            "cpf",
            "cnpj",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    cors_allow_origins: list[str] = Field(default_factory=list)

    @field_validator(
        "cors_allow_origins",
        "pii_redaction_fields",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("triage_default_entry_type")
    @classmethod
    def _check_entry_type(cls, value: str) -> str:
        value = (value or "").strip().lower()
        if value not in {"income", "expense"}:
            raise ValueError("triage_default_entry_type must be 'income' or 'expense'")
        return value

    @property
    def ai_allowed_providers(self) -> list[str]:
        return [item.lower() for item in _parse_list_value(self.ai_allowed_providers_raw)]

    def ai_api_key_for(self, provider_name: str) -> str:
        name = (provider_name or "").lower().strip()
        if name == "groq":
            return self.groq_api_key
        if name == "claude":
            return self.anthropic_api_key
        if name == "openai":
            return self.openai_api_key
        return ""

@lru_cache

def get_settings() -> Settings:
    return Settings()
