from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load .env into os.environ so non-prefixed vars (e.g. GEMINI_API_KEY) are available
load_dotenv()


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "LOREKEEPER_",
        "env_file": ".env",
        "extra": "ignore",
    }

    # Models
    embedding_model: str = "all-MiniLM-L6-v2"
    llm_model: str = "gemini-2.5-flash"

    # Generation
    llm_temperature: float = 0.3
    llm_max_output_tokens: int = 1000
    generation_timeout_s: float | None = 30.0

    # Retrieval
    default_top_k: int = 10
    max_top_k: int = 20
    rrf_k: int = 60
    fusion_candidate_multiplier: int = 2
    max_fusion_candidates: int = 50
    search_timeout_s: float | None = 10.0

    # Prompt / response shaping
    preview_chars: int = 200
    history_messages: int = 4
    log_query_chars: int = 100

    # Storage
    chroma_dir: Path = Path("./data/chroma")
    collection_name: str = "passages"
    query_log_path: Path | None = Path("./data/query_log.json")

    # Campaign id -> owner user id, for deployments without a campaign service
    campaign_owners: dict[str, str] = {}

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def gemini_api_key(self) -> str:
        return os.environ.get("GEMINI_API_KEY", "")


settings = Settings()
