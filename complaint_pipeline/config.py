"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Persistent store
    store_backend: str = "supabase"  # "supabase" or "memory"
    work_items_table: str = "posts"

    # Connection pool
    pool_capacity: int = 5
    pool_max_age_seconds: float = 300.0
    pool_poll_interval_seconds: float = 0.1

    # Inference
    openai_api_key: Optional[str] = None
    classification_model: str = "gpt-4o-mini"
    summary_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    inference_timeout_seconds: float = 15.0
    embed_char_limit: int = 7000
    classify_char_limit: int = 7000
    max_classify_chunks: int = 3

    # Resilience
    max_attempts: int = 3
    rate_limit_cooldown_seconds: float = 60.0
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 30.0
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 60.0
    fallback_failure_ratio: float = 0.7
    fallback_min_requests: int = 10

    # Job processing
    max_concurrent_jobs: int = 2
    auto_trigger_interval_seconds: float = 0.0  # 0 disables the scheduler
    auto_trigger_min_items: int = 10

    # Trigger endpoint protection
    trigger_rate_limit: int = 3
    trigger_rate_window_seconds: float = 60.0
    api_key: Optional[str] = None
    # Peers whose forwarding headers (cf-connecting-ip, x-real-ip,
    # x-forwarded-for) identify the client. Empty trusts none.
    trusted_proxies: List[str] = []

    # Stages hosted by other services, by name -> trigger URL
    handoff_urls: Dict[str, str] = {}
    handoff_timeout_seconds: float = 30.0

    # Server
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
