"""
Luna - Service Wiring
======================
Builds the long-lived serving objects once at process start and hands
them out explicitly; nothing here is a module-level global.

    services = create_services(settings)
    result = await services.orchestrator.submit_turn(owner_key, prompt)
    ...
    services.close()

One ``SentenceEmbedder`` instance is shared by retrieval (and, in the CLI,
by ingestion) so both sides always embed with the same model.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from motor.motor_asyncio import AsyncIOMotorClient

from luna.config.settings import Settings
from luna.src.core.embedder import SentenceEmbedder
from luna.src.core.generator import GeminiTextGenerator, TextGenerator
from luna.src.core.orchestrator import ConversationOrchestrator
from luna.src.core.retrieval import RetrievalService
from luna.src.database.conversation_store import MongoConversationStore
from luna.src.database.profile_store import MongoUserProfileStore
from luna.src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class AssistantServices:
    embedder: SentenceEmbedder
    retrieval: RetrievalService
    generator: TextGenerator
    orchestrator: ConversationOrchestrator
    mongo_client: AsyncIOMotorClient

    def close(self) -> None:
        self.mongo_client.close()
        logger.info("MongoDB client closed.")


def create_embedder(config: Settings) -> SentenceEmbedder:
    return SentenceEmbedder(model_name=config.EMBEDDING_MODEL, device=config.EMBEDDING_DEVICE, batch_size=config.EMBED_BATCH_SIZE)


def create_services(config: Settings) -> AssistantServices:
    """
    Wire embedder, retrieval, Mongo stores, generator and orchestrator.

    The embedding model is loaded eagerly; a missing index does not fail
    startup (retrieval serves ungrounded until the index is built).
    """
    t_start = time.perf_counter()

    embedder = create_embedder(config)
    embedder.load()

    retrieval = RetrievalService(embedder, config.INDEX_PATH, default_k=config.RETRIEVAL_K)
    retrieval.start()

    mongo_client = AsyncIOMotorClient(config.MONGO_URI.get_secret_value(), tz_aware=True)
    database = mongo_client[config.MONGO_DB_NAME]
    logger.info("MongoDB async client created (db: %s).", config.MONGO_DB_NAME)

    generator = GeminiTextGenerator(model_name=config.LLM_MODEL, temperature=config.LLM_TEMPERATURE)

    orchestrator = ConversationOrchestrator(
        retrieval,
        MongoConversationStore(database),
        MongoUserProfileStore(database),
        generator,
        retrieval_k=config.RETRIEVAL_K,
        generation_timeout_seconds=config.GENERATION_TIMEOUT_SECONDS,
        partial_reply_policy=config.PARTIAL_REPLY_POLICY,
        default_title=config.DEFAULT_TITLE,
    )

    logger.info("Services ready in %.1fms (retrieval available=%s).", (time.perf_counter() - t_start) * 1000, retrieval.available)
    return AssistantServices(embedder=embedder, retrieval=retrieval, generator=generator, orchestrator=orchestrator, mongo_client=mongo_client)
