"""Application configuration with sensible defaults."""
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("NOTECHAT_DATA_DIR", str(BASE_DIR / "data")))
NOTES_DIR = Path(os.getenv("NOTECHAT_NOTES_DIR", str(BASE_DIR / "notes")))

# Ensure data directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
NOTES_DIR.mkdir(parents=True, exist_ok=True)

# OpenAI-compatible provider
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-4")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-ada-002")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "60.0"))
TEMPERATURE = float(os.getenv("TEMPERATURE", "0"))

# RAG parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "4"))
MAX_DOCUMENTS = int(os.getenv("MAX_DOCUMENTS", "0"))      # 0 = whole vault
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "64"))
COLLECTION_NAME = os.getenv("COLLECTION_NAME", "obsidian-notes")
MEMORY_WINDOW = int(os.getenv("MEMORY_WINDOW", "0"))      # 0 = whole conversation

# Retry policy for network-class errors
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "0.5"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "8.0"))

# Host
VAULT_NAME = os.getenv("VAULT_NAME", NOTES_DIR.name)
SETTINGS_PATH = DATA_DIR / "settings.json"
INDEX_DIR = DATA_DIR / "index"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class RagConfig(BaseModel):
    """Explicit configuration for the indexing and answering pipeline."""

    chunk_size: int = Field(default=CHUNK_SIZE, gt=0)
    chunk_overlap: int = Field(default=CHUNK_OVERLAP, ge=0)
    top_k: int = Field(default=RETRIEVAL_TOP_K, ge=1)
    max_documents: Optional[int] = Field(default=MAX_DOCUMENTS or None, ge=1)
    embedding_batch_size: int = Field(default=EMBEDDING_BATCH_SIZE, ge=1)
    collection_name: str = Field(default=COLLECTION_NAME, min_length=1)
    embedding_model: str = EMBEDDING_MODEL
    temperature: float = Field(default=TEMPERATURE, ge=0.0, le=2.0)
    memory_window: Optional[int] = Field(default=MEMORY_WINDOW or None, ge=1)
    max_retries: int = Field(default=MAX_RETRIES, ge=0)
    retry_base_delay: float = Field(default=RETRY_BASE_DELAY, ge=0.0)
    retry_max_delay: float = Field(default=RETRY_MAX_DELAY, ge=0.0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "RagConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be less than "
                f"chunk_size ({self.chunk_size})"
            )
        return self

    def with_overrides(self, **changes) -> "RagConfig":
        """Copy with ``changes`` applied, validated like a fresh config.

        Raises:
            pydantic.ValidationError: If a changed value is out of bounds
        """
        return RagConfig.model_validate({**self.model_dump(), **changes})
