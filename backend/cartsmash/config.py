from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "env_file": "../.env",
        "extra": "ignore",
        "env_prefix": "",
        "case_sensitive": False,
    }

    # Catalog / cart API
    catalog_api_url: str = "http://localhost:3001/api/instacart"
    use_mock_catalog: bool = False

    # Outbound calls
    request_timeout_s: float = 10.0
    retailer_cache_ttl_s: float = 1800.0
    retry_max_attempts: int = 3
    retry_base_delay_s: float = 0.2
    retry_max_delay_s: float = 2.0

    # Matching
    confidence_threshold: float = 0.7
    retailer_confidence_thresholds: dict[str, float] = {}
    max_candidates: int = 3
    search_concurrency: int = 5

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = ""


settings = Settings()
