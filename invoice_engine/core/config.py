from pydantic import Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = Field("invoice-engine", alias="APP_NAME")
    app_env: str = Field("dev", alias="APP_ENV")

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # LLM-assisted parsing (optional, OpenAI-compatible chat completions)
    llm_base_url: str | None = Field(default=None, alias="LLM_BASE_URL")
    llm_api_key: str | None = Field(default=None, alias="LLM_API_KEY")
    llm_deployment: str | None = Field(default=None, alias="LLM_DEPLOYMENT")
    llm_timeout_seconds: float = Field(30.0, alias="LLM_TIMEOUT_SECONDS")

    # Azure Document Intelligence (optical text extraction)
    az_di_endpoint: str | None = Field(default=None, alias="AZ_DI_ENDPOINT")
    az_di_api_key: str | None = Field(default=None, alias="AZ_DI_API_KEY")

    # Storage
    vendor_db_path: str = Field("vendor_mappings.db", alias="VENDOR_DB_PATH")
    invoice_db_path: str = Field("invoices.db", alias="INVOICE_DB_PATH")

    # Optional JSON file extending the vendor / category rule tables
    rules_file: str | None = Field(default=None, alias="RULES_FILE")

    # Scoring thresholds
    learned_min_confidence: float = Field(50.0, alias="LEARNED_MIN_CONFIDENCE")
    auto_learn_min_confidence: float = Field(50.0, alias="AUTO_LEARN_MIN_CONFIDENCE")
    decay_factor: float = Field(0.95, alias="DECAY_FACTOR")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

settings = Settings()
