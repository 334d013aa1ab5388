"""Runtime configuration for ragchat-memory."""

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_path: Path = Path(os.environ.get("RAGCHAT_DB_PATH", Path.home() / ".ragchat" / "lancedb"))
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "1536"))
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "ollama")  # ollama | google
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "nomic-embed-text")
    google_embedding_model: str = os.environ.get("GOOGLE_EMBEDDING_MODEL", "gemini-embedding-001")
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    llm_model: str = os.environ.get("LLM_MODEL", "gemini-2.5-flash")
    use_case: str = os.environ.get("RAGCHAT_USE_CASE", "general")  # general | personal_assistant | customer_support
    pinecone_cloud: str = os.environ.get("PINECONE_CLOUD", "aws")
    pinecone_region: str = os.environ.get("PINECONE_REGION", "us-east-1")
    embed_timeout: float = float(os.environ.get("EMBED_TIMEOUT", "30"))
    completion_timeout: float = float(os.environ.get("COMPLETION_TIMEOUT", "60"))
    remote_timeout: float = float(os.environ.get("REMOTE_TIMEOUT", "30"))
    default_namespace: str = "default"
    sync_batch_size: int = 100
    sync_limit: int = 1000
    history_window: int = 6  # recent raw messages injected per turn
    vector_index_min_rows: int = 256


CONFIG = Config()
