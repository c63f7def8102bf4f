"""
Build a DynamicMemoryEngine from the environment.

Environment variables:
- API_KEY / OPENAI_API_KEY, API_BASE_URL / OPENAI_BASE_URL: provider credentials
- MEMORY_SUMMARY_MODEL (+ optional MODEL_PROVIDER): chat model for summaries
- MEMORY_EMBEDDING_MODEL, MEMORY_EMBEDDING_BASE_URL, MEMORY_EMBEDDING_API_KEY
- MEMORY_PROVIDER_TIMEOUT: seconds before a provider call counts as failed
- DATABASE_URL: persist session memory in PostgreSQL when set
- DYNAMIC_MEMORY_*: see DynamicMemoryConfig.from_env
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .config import DynamicMemoryConfig
from .engine import DynamicMemoryEngine
from .persistence import PostgresMemoryPersistence
from .summarizer import DEFAULT_TIMEOUT_S, MemorySummarizer

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


def get_credentials() -> tuple[str | None, str | None]:
    """
    Provider credentials, generic variables first:
    - API Key: API_KEY > OPENAI_API_KEY
    - Base URL: API_BASE_URL > OPENAI_BASE_URL
    """
    api_key = os.getenv("API_KEY") or os.getenv("OPENAI_API_KEY")
    base_url = os.getenv("API_BASE_URL") or os.getenv("OPENAI_BASE_URL")
    return api_key, base_url


def create_summary_llm():
    """Low-temperature chat model for memory summaries, or None if it cannot be built."""
    api_key, base_url = get_credentials()
    init_kwargs = {"temperature": 0.3, "max_tokens": 500}
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url

    provider_kwargs = {}
    model_provider = os.getenv("MODEL_PROVIDER")
    if model_provider:
        provider_kwargs["model_provider"] = model_provider

    try:
        return init_chat_model(
            os.getenv("MEMORY_SUMMARY_MODEL", DEFAULT_SUMMARY_MODEL),
            **provider_kwargs,
            **init_kwargs,
        )
    except Exception as e:
        logger.warning("Failed to create summary LLM: %s", e)
        return None


def create_embedding_model():
    """OpenAI-compatible embeddings, or None (memory then cannot be created)."""
    api_key, base_url = get_credentials()
    embed_api_key = os.getenv("MEMORY_EMBEDDING_API_KEY") or api_key
    embed_base_url = os.getenv("MEMORY_EMBEDDING_BASE_URL") or base_url
    try:
        from langchain_openai import OpenAIEmbeddings

        embed_kwargs = {}
        if embed_api_key:
            embed_kwargs["api_key"] = embed_api_key
        if embed_base_url:
            embed_kwargs["base_url"] = embed_base_url
        return OpenAIEmbeddings(
            model=os.getenv("MEMORY_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
            **embed_kwargs,
        )
    except Exception as e:
        logger.warning("Failed to create embedding model: %s", e)
        return None


def create_persistence() -> Optional[PostgresMemoryPersistence]:
    """PostgreSQL persistence when DATABASE_URL is set; None keeps memory in process."""
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return None
    try:
        from psycopg import Connection
        from psycopg.rows import dict_row

        conn = Connection.connect(
            db_url,
            autocommit=True,
            prepare_threshold=0,
            row_factory=dict_row,
        )
    except Exception as e:
        logger.warning("Failed to connect to PostgreSQL, memory will not persist: %s", e)
        return None
    return PostgresMemoryPersistence(conn)


def create_memory_engine(
    config: Optional[DynamicMemoryConfig] = None,
    executor=None,
) -> DynamicMemoryEngine:
    # override=True so a .env file wins over the inherited environment
    load_dotenv(override=True)

    config = config or DynamicMemoryConfig.from_env()
    summarizer = MemorySummarizer(
        llm=create_summary_llm(),
        embedding_model=create_embedding_model(),
        timeout_s=float(os.getenv("MEMORY_PROVIDER_TIMEOUT", str(DEFAULT_TIMEOUT_S))),
    )
    engine = DynamicMemoryEngine(
        config=config,
        summarizer=summarizer,
        persistence=create_persistence(),
        executor=executor,
    )
    logger.info(
        "Dynamic memory engine ready (enabled=%s, interval=%d, max_entries=%d)",
        config.enabled, config.summary_message_interval, config.max_entries,
    )
    return engine
