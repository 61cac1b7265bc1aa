from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-4o-mini"
    openrouter_model: str = ""

    # Search provider
    search_provider: str = "brave"  # brave | tavily
    brave_api_key: str = ""
    tavily_api_key: str = ""
    search_fallback_to_tavily: bool = True

    # Scraping
    scrape_timeout_seconds: float = 20.0
    scrape_max_chars: int = 60000
    scrape_user_agent: str = "ContactScout/0.1 (+https://github.com/contactscout)"

    # Provider retry policy (applied inside each adapter)
    provider_retry_max_attempts: int = 3
    provider_retry_base_delay: float = 1.0
    provider_retry_max_delay: float = 30.0
    provider_retry_backoff: float = 2.0

    # Orchestration
    max_concurrent_searches: int = 50
    query_generation_timeout: float = 30.0
    web_search_timeout: float = 60.0
    content_scraping_timeout: float = 45.0
    contact_extraction_timeout: float = 60.0
    total_search_timeout: float = 300.0
    dedup_method: str = "hybrid"  # exact | semantic | hybrid
    dedup_threshold: float = 0.8
    max_generated_queries: int = 20
    max_search_queries: int = 5
    max_scrape_urls: int = 10
    min_content_chars: int = 100
    min_query_score: float = 0.3
    progress_queue_size: int = 64
    stale_search_hours: float = 1.0

    # Search cache
    search_cache_enabled: bool = True
    search_cache_ttl_seconds: int = 3600
    search_cache_max_entries: int = 1000

    # PostgreSQL database (empty -> in-memory gateway)
    database_url: str = ""

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_retention_days: int = 7

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
