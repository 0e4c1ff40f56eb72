from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-4o-mini"
    openrouter_model: str = ""
    extract_model: str = ""  # optional override for the per-URL extraction agent
    llm_max_tokens: int = 4096

    # Search provider
    search_provider: str = "tavily"  # tavily | brave
    tavily_api_key: str = ""
    tavily_search_depth: str = "advanced"  # basic | advanced
    brave_api_key: str = ""
    search_fallback_to_tavily: bool = True
    search_max_results: int = 20

    # Content fetch (Jina reader)
    jina_reader_base_url: str = "https://r.jina.ai/"
    jina_api_key: str = ""
    fetch_timeout_seconds: float = 60.0

    # Orchestrator budgets
    max_search_calls: int = 4
    max_extract_calls: int = 10
    max_repeat_search_query: int = 2
    max_repeat_extract_url: int = 2
    orchestrator_max_steps: int = 16

    # Extraction agent
    extract_max_steps: int = 18
    extract_large_line_threshold: int = 2200
    extract_large_char_threshold: int = 180000
    extract_preview_lines: int = 200

    # Evidence store
    store_dir_name: str = ".deepsearch"
    page_cache_enabled: bool = True

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def search_depth(self) -> str:
        depth = self.tavily_search_depth.lower().strip()
        return depth if depth in ("basic", "advanced") else "advanced"


settings = Settings()
