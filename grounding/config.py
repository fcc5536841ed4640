from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = ""
    search_api_base: str = ""
    search_api_key: str = ""
    resolver_scoring_version: str = "v2"
    resolver_timeout_ms: int = 800
    resolver_upstream_retries: int = 1
    resolver_upstream_retry_backoff_ms: int = 80
    resolver_cache_scoped_cap_ms: int = 300
    resolver_cache_scoped_floor_ms: int = 50
    resolver_search_scoped_cap_ms: int = 450
    resolver_search_scoped_floor_ms: int = 80
    resolver_cache_global_cap_ms: int = 300
    resolver_cache_global_floor_ms: int = 50
    resolver_search_global_cap_ms: int = 1200
    resolver_search_global_floor_ms: int = 120

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
