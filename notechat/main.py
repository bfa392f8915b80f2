"""Quart host application for chatting with notes."""
import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Dict, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError
from quart import Quart, jsonify, request

from notechat import config
from notechat.chat.session import ChatSession
from notechat.config import RagConfig
from notechat.errors import (
    CollectionNotFoundError,
    DimensionMismatchError,
    IndexUnavailableError,
    SessionClosedError,
    StreamInterrupted,
    UpstreamError,
)
from notechat.host import SseChatView, history_to_dict, message_to_dict
from notechat.llm_client import OpenAIClient
from notechat.rag.embeddings import EmbeddingClient
from notechat.rag.ingest import Indexer
from notechat.rag.retriever import ConversationalRetriever
from notechat.rag.store_faiss import VectorIndex
from notechat.settings import SettingsStore

logger = structlog.get_logger()

MAX_MESSAGE_LENGTH = 2000


def configure_logging(level: str = None) -> None:
    """Configure structured JSON logging over stdlib logging."""
    logging.basicConfig(level=(level or config.LOG_LEVEL).upper(), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)


class SettingsUpdate(BaseModel):
    api_key: Optional[str] = None
    model_name: Optional[str] = Field(default=None, min_length=1)


def error_code(error: BaseException) -> str:
    """Stable code for an error shown to the UI."""
    if isinstance(error, StreamInterrupted):
        return "STREAM_INTERRUPTED"
    if isinstance(error, CollectionNotFoundError):
        return "INDEX_NOT_BUILT"
    if isinstance(error, IndexUnavailableError):
        return "INDEX_UNAVAILABLE"
    if isinstance(error, DimensionMismatchError):
        return "DIMENSION_MISMATCH"
    if isinstance(error, UpstreamError):
        return "UPSTREAM_ERROR"
    if isinstance(error, SessionClosedError):
        return "SESSION_CLOSED"
    return "PROCESSING_ERROR"


def sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def create_app(
    settings_store: Optional[SettingsStore] = None,
    rag_config: Optional[RagConfig] = None,
    llm=None,
    vector_index: Optional[VectorIndex] = None,
    notes_dir: Optional[Path] = None,
) -> Quart:
    """Build the application and wire the pipeline components.

    Args:
        settings_store: Persistent settings (defaults to DATA_DIR/settings.json)
        rag_config: Pipeline configuration (defaults from environment)
        llm: Chat/embedding backend (defaults to OpenAIClient)
        vector_index: Vector index (defaults to a FAISS index under DATA_DIR)
        notes_dir: Vault directory to reindex (defaults to NOTES_DIR)
    """
    app = Quart(__name__)

    settings_store = settings_store or SettingsStore()
    rag_config = rag_config or RagConfig()
    llm = llm or OpenAIClient(settings_store.settings)
    vector_index = vector_index or VectorIndex(config.INDEX_DIR, rag_config.embedding_model)
    notes_dir = notes_dir or config.NOTES_DIR

    embedding_client = EmbeddingClient(llm, rag_config)
    indexer = Indexer(vector_index, embedding_client, rag_config)
    retriever = ConversationalRetriever(llm, embedding_client, vector_index, rag_config)

    sessions: Dict[str, ChatSession] = {}

    @app.route("/api/sessions", methods=["POST"])
    async def create_session():
        """Open a new chat session (one conversation, own memory)."""
        session_id = str(uuid.uuid4())
        sessions[session_id] = ChatSession(retriever)
        logger.info("chat_session_created", session_id=session_id)
        return jsonify({"session_id": session_id}), 201

    @app.route("/api/sessions/<session_id>", methods=["DELETE"])
    async def close_session(session_id: str):
        session = sessions.pop(session_id, None)
        if session is None:
            return jsonify({"error": "Session not found"}), 404
        await session.close()
        return "", 204

    @app.route("/api/sessions/<session_id>/messages", methods=["GET"])
    async def get_messages(session_id: str):
        session = sessions.get(session_id)
        if session is None:
            return jsonify({"error": "Session not found"}), 404
        return jsonify({"messages": history_to_dict(session.history())})

    @app.route("/api/sessions/<session_id>/messages", methods=["POST"])
    async def send_message(session_id: str):
        """Submit a message; answers with a text/event-stream.

        SSE format:
            event: render      data: {"messages": [...]}   (after every token)
            event: complete    data: {"message": {...}}
            event: error       data: {"code": "...", "message": "..."}
        """
        session = sessions.get(session_id)
        if session is None:
            return jsonify({"error": "Session not found"}), 404

        try:
            body = ChatRequest(**((await request.get_json()) or {}))
        except ValidationError as e:
            return jsonify({"error": "Invalid request", "details": e.errors(include_url=False)}), 400

        # One view per request: a queued message only streams its own answer
        view = SseChatView()
        queue = view.queue
        task = asyncio.ensure_future(session.send(body.message, renderer=view.render))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        logger.info(
            "chat_request_received",
            session_id=session_id,
            message_length=len(body.message),
        )

        async def events():
            try:
                while True:
                    state = await queue.get()
                    if state is None:
                        break
                    yield sse("render", state)

                error = None if task.cancelled() else task.exception()
                if task.cancelled():
                    yield sse("error", {"code": "CANCELLED", "message": "Answer cancelled"})
                elif error is not None:
                    if error_code(error) == "PROCESSING_ERROR":
                        logger.error("chat_stream_error", error=str(error), error_type=type(error).__name__)
                    yield sse("error", {"code": error_code(error), "message": str(error)})
                else:
                    yield sse("complete", {"message": message_to_dict(task.result())})
            finally:
                view.close()
                if not task.done():
                    # Client went away mid-answer: the surface is gone, end the session
                    logger.info("chat_client_disconnected", session_id=session_id)
                    sessions.pop(session_id, None)
                    await session.close()

        return events(), 200, {
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        }

    @app.route("/api/reindex", methods=["POST"])
    async def reindex():
        """Rebuild the note collection; reports per-document counts."""
        try:
            stats = await indexer.reindex_notes(notes_dir)
        except FileNotFoundError as e:
            return jsonify({"error": str(e)}), 404
        except UpstreamError as e:
            logger.error("reindex_upstream_error", error=str(e))
            return jsonify({"error": str(e), "code": error_code(e)}), 502
        except IndexUnavailableError as e:
            logger.error("reindex_index_error", error=str(e))
            return jsonify({"error": str(e), "code": error_code(e)}), 503
        return jsonify(stats.as_dict())

    @app.route("/api/settings", methods=["GET"])
    async def get_settings():
        settings = settings_store.settings
        return jsonify({"model_name": settings.model_name, "api_key_set": bool(settings.api_key)})

    @app.route("/api/settings", methods=["PUT"])
    async def update_settings():
        try:
            body = SettingsUpdate(**((await request.get_json()) or {}))
            settings = settings_store.update(api_key=body.api_key, model_name=body.model_name)
        except (ValidationError, ValueError) as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"model_name": settings.model_name, "api_key_set": bool(settings.api_key)})

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - the provider is reachable with the configured key."""
        checks = {"status": "healthy", "provider": False, "model": False}
        try:
            models = await llm.list_models()
        except UpstreamError as e:
            logger.error("health_check_failed", error=str(e))
            checks.update(status="unhealthy", error=str(e))
            return jsonify(checks), 503

        checks["provider"] = True
        if settings_store.settings.model_name in models:
            checks["model"] = True
        else:
            checks["status"] = "unhealthy"
            checks["error"] = f"Missing chat model: {settings_store.settings.model_name}"
        return jsonify(checks), 200 if checks["status"] == "healthy" else 503

    @app.route("/health/live")
    async def health_live():
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": "Not found"}), 404

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn in production
    app.run(host="127.0.0.1", port=5000, debug=True)
