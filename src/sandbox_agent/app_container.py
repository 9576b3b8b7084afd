import logging
from typing import Optional

from sandbox_agent.config import Config, load_config
from sandbox_agent.domain.contracts import EmbeddingClient, ModelGateway
from sandbox_agent.execution.file_ops import OperationExecutor
from sandbox_agent.observability.structured_log import log_json
from sandbox_agent.persistence.memory_store import SqliteMemoryStore
from sandbox_agent.persistence.vector_store import SqliteVectorStore
from sandbox_agent.providers.embeddings import HashingEmbeddingClient, HuggingFaceEmbeddingClient
from sandbox_agent.providers.openrouter import OpenRouterGateway
from sandbox_agent.services.agent_service import AgentService
from sandbox_agent.services.batch import BatchExecutor
from sandbox_agent.services.context import ContextAssembler
from sandbox_agent.services.indexer import SandboxIndexer
from sandbox_agent.tools.templates import ScaffoldGenerator
from sandbox_agent.tools.web import WebSearcher

logger = logging.getLogger(__name__)


def build_embedding_client(config: Config) -> EmbeddingClient:
    if config.embedding_backend == "huggingface":
        if not config.hf_token:
            logger.warning("EMBEDDING_BACKEND=huggingface but HF_TOKEN is not set; embedding calls will fail.")
        return HuggingFaceEmbeddingClient(
            api_key=config.hf_token,
            model=config.embedding_model,
            url=config.embedding_url,
        )
    return HashingEmbeddingClient()


def build_gateway(config: Config) -> OpenRouterGateway:
    if not config.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY is not set; model calls will fail until it is configured.")
    return OpenRouterGateway(
        api_key=config.openrouter_api_key,
        model=config.openrouter_model,
        base_url=config.openrouter_base_url,
        timeout_sec=config.openrouter_timeout_sec,
    )


def build_agent_service(
    config: Optional[Config] = None,
    gateway: Optional[ModelGateway] = None,
    embedder: Optional[EmbeddingClient] = None,
) -> AgentService:
    """Wire every store and collaborator once, explicitly, for one process."""
    cfg = config or load_config()
    embedder = embedder or build_embedding_client(cfg)
    memory = SqliteMemoryStore(cfg.memory_db_path)
    vectors = SqliteVectorStore(cfg.vector_db_path, embedder=embedder)
    indexer = SandboxIndexer(vectors, embedder, max_file_bytes=cfg.index_max_file_bytes)
    batch = BatchExecutor(
        executor=OperationExecutor(delete_retry_delay_sec=cfg.delete_retry_delay_ms / 1000.0),
        memory=memory,
        vector_store=vectors,
        indexer=indexer,
        web_searcher=WebSearcher() if cfg.enable_web_search else None,
        templates=ScaffoldGenerator(),
        semantic_search_limit=cfg.semantic_search_limit,
    )
    context = ContextAssembler(
        memory,
        recent_actions=cfg.context_recent_actions,
        recent_messages=cfg.context_recent_messages,
        context_format=cfg.context_format,
    )
    service = AgentService(
        gateway=gateway or build_gateway(cfg),
        batch=batch,
        context=context,
        memory=memory,
        sandbox_root=str(cfg.sandbox_root),
    )
    log_json(
        logger,
        "app.started",
        sandbox_root=str(cfg.sandbox_root),
        data_dir=str(cfg.data_dir),
        model=cfg.openrouter_model,
        embedding_backend=cfg.embedding_backend,
        web_search=cfg.enable_web_search,
        vector_entries=vectors.count(),
    )
    return service
