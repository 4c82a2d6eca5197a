from fastapi import FastAPI, HTTPException, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from dotenv import load_dotenv
import os
import json
from typing import AsyncIterator, Dict, List, Optional

from app.logging_config import setup_logging, get_logger
from app.rag.conversation_manager import ConversationManager
from app.rag.controller import ConversationBusyError, ConversationController
from app.rag.ollama_client import OllamaClient, OllamaError
from app.retrieval.rag_client import RAGClient, RAGError
from app.settings_store import ChatSettings, SettingsStore, PROFILE_FIELDS

load_dotenv()

# Configure logging on startup
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/dewey.log")
)
logger = get_logger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Initialize stores on startup
settings_store = SettingsStore()
conversation_manager = ConversationManager(
    max_age_seconds=3600,
    controller_options={"append_related_resources": _env_flag("DEWEY_APPEND_RELATED_RESOURCES", True)}
)

app = FastAPI(title="Dewey Chat API", version="0.1.0")

# Configure CORS to allow requests from the web frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class SettingsPatch(BaseModel):
    ollama_url: Optional[str] = None
    rag_server_url: Optional[str] = None
    rag_threshold: Optional[float] = None
    rag_collections: Optional[List[str]] = None
    rag_enabled: Optional[bool] = None
    system_message: Optional[str] = None
    theme: Optional[str] = None
    chat_font_size: Optional[int] = None
    user_preferred_name: Optional[str] = None
    user_school_or_office: Optional[str] = None
    user_role: Optional[str] = None
    user_context: Optional[str] = None

class SystemMessageRequest(BaseModel):
    message: str

class TagsRequest(BaseModel):
    ollama_url: Optional[str] = None

class ModelRequest(BaseModel):
    model: Optional[str] = None

class MessageRequest(BaseModel):
    message: str

class IntroRequest(BaseModel):
    user_preferred_name: str = ""
    user_school_or_office: str = ""
    user_role: str = ""
    user_context: str = ""
    message: str = ""

class ConversationSummaryResponse(BaseModel):
    conversation_id: str
    first_message: str
    message_count: int
    citation_count: int
    selected_model: Optional[str] = None
    last_updated: float


@app.on_event("startup")
async def startup_event():
    logger.info("Starting Dewey Chat API")
    logger.info(f"Settings file: {settings_store.path}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down Dewey Chat API")
    await conversation_manager.shutdown()


def _controller_or_404(conversation_id: str, user_id: str) -> ConversationController:
    controller = conversation_manager.get_controller(conversation_id, user_id)
    if controller is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return controller


def _user_controllers(user_id: str) -> List[ConversationController]:
    return [c for c in conversation_manager.controllers.values() if c.conversation.user_id == user_id]


def _ensure_no_busy_swap(user_id: str, settings: ChatSettings) -> None:
    """409 if new settings would replace the clients of a conversation that is mid-send."""
    for controller in _user_controllers(user_id):
        if controller.conversation.is_waiting and controller.swaps_clients(settings):
            raise HTTPException(status_code=409, detail="Cannot change server URLs while a response is in progress")


async def _apply_to_user_conversations(user_id: str) -> None:
    """Push freshly stored settings to every open conversation of a user."""
    settings = settings_store.get(user_id)
    for controller in _user_controllers(user_id):
        try:
            await controller.apply_settings(settings)
        except ConversationBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))


def _sse(events: AsyncIterator[Dict], conversation_id: str) -> StreamingResponse:
    """Serialize controller events as Server Sent Events."""
    async def event_generator():
        try:
            async for event in events:
                yield f"data: {json.dumps(event)}\n\n"
        except Exception as e:
            logger.error(f"Unexpected error streaming conversation {conversation_id}: {str(e)}", exc_info=True)
            yield f"data: {json.dumps({'type': 'error', 'message': str(e)})}\n\n"

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "message": "Dewey Chat API is running"}


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------

@app.get("/settings")
async def get_settings(x_user_id: str = Header("anonymous")):
    return settings_store.get(x_user_id).to_dict()

@app.patch("/settings")
async def update_settings(request: SettingsPatch, x_user_id: str = Header("anonymous")):
    patch = request.model_dump(exclude_none=True)
    _ensure_no_busy_swap(x_user_id, settings_store.preview(x_user_id, patch))
    settings_store.update(x_user_id, patch)
    await _apply_to_user_conversations(x_user_id)
    return settings_store.get(x_user_id).to_dict()

@app.post("/settings/system-message")
async def set_system_message(request: SystemMessageRequest, x_user_id: str = Header("anonymous")):
    settings_store.set_system_message(x_user_id, request.message)
    await _apply_to_user_conversations(x_user_id)
    return settings_store.get(x_user_id).to_dict()

@app.delete("/settings/system-message-history")
async def remove_system_message_history(request: SystemMessageRequest, x_user_id: str = Header("anonymous")):
    settings_store.remove_system_message_history(x_user_id, request.message)
    return settings_store.get(x_user_id).to_dict()


# ----------------------------------------------------------------------
# Proxies
# ----------------------------------------------------------------------

@app.post("/models/tags")
async def list_models(request: TagsRequest, x_user_id: str = Header("anonymous")):
    """List models available on a model server (defaults to the user's configured one)"""
    url = (request.ollama_url or settings_store.get(x_user_id).ollama_url).strip()
    client = OllamaClient(url)
    try:
        models = await client.tags()
    except OllamaError as e:
        logger.error(f"Error listing models at {url}: {str(e)}")
        raise HTTPException(status_code=502, detail=f"Error listing models: {str(e)}")
    finally:
        await client.aclose()
    return {"models": models}

@app.get("/rag/collections")
async def list_collections(url: Optional[str] = None, x_user_id: str = Header("anonymous")):
    """List collections on a RAG server (defaults to the user's configured one)"""
    rag_url = (url or settings_store.get(x_user_id).resolved_rag_url).strip()
    client = RAGClient(rag_url)
    try:
        collections = await client.list_collections()
    except RAGError as e:
        logger.error(f"Error listing RAG collections at {rag_url}: {str(e)}")
        raise HTTPException(status_code=502, detail=f"Error listing collections: {str(e)}")
    finally:
        await client.aclose()
    return {"collections": collections}


# ----------------------------------------------------------------------
# Conversations
# ----------------------------------------------------------------------

@app.post("/conversations")
async def create_conversation(x_user_id: str = Header("anonymous")):
    controller = await conversation_manager.create_conversation(x_user_id, settings_store.get(x_user_id))
    return {"conversation_id": controller.conversation.conversation_id, "status": controller.status()}

@app.get("/conversations", response_model=List[ConversationSummaryResponse])
async def get_all_conversation_summaries(x_user_id: str = Header("anonymous")):
    return conversation_manager.get_conversation_summaries(x_user_id)

@app.get("/conversations/{conversation_id}")
async def get_conversation_detail(conversation_id: str, x_user_id: str = Header("anonymous")):
    """Get full details for a specific conversation"""
    controller = _controller_or_404(conversation_id, x_user_id)
    c = controller.conversation
    return {
        "conversation_id": conversation_id,
        "messages": conversation_manager.get_messages(conversation_id),
        "status": controller.status(),
        "citations": controller.citation_panel().to_dict(),
        "last_updated": c.last_accessed,
    }

@app.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, x_user_id: str = Header("anonymous")):
    _controller_or_404(conversation_id, x_user_id)
    await conversation_manager.delete_conversation(conversation_id)
    return {"deleted": conversation_id}

@app.post("/conversations/{conversation_id}/reset")
async def reset_conversation(conversation_id: str, x_user_id: str = Header("anonymous")):
    controller = _controller_or_404(conversation_id, x_user_id)
    if controller.conversation.is_waiting:
        raise HTTPException(status_code=409, detail="A response is still in progress")
    controller.reset()
    return {"conversation_id": conversation_id, "status": controller.status()}

@app.post("/conversations/{conversation_id}/connect")
async def connect(conversation_id: str, x_user_id: str = Header("anonymous")):
    controller = _controller_or_404(conversation_id, x_user_id)
    return await controller.connect()

@app.post("/conversations/{conversation_id}/model")
async def select_model(conversation_id: str, request: ModelRequest, x_user_id: str = Header("anonymous")):
    controller = _controller_or_404(conversation_id, x_user_id)
    return await controller.select_model(request.model)

@app.post("/conversations/{conversation_id}/retry")
async def retry(conversation_id: str, x_user_id: str = Header("anonymous")):
    controller = _controller_or_404(conversation_id, x_user_id)
    return await controller.retry()

@app.get("/conversations/{conversation_id}/status")
async def get_status(conversation_id: str, x_user_id: str = Header("anonymous")):
    controller = _controller_or_404(conversation_id, x_user_id)
    return controller.status()

@app.get("/conversations/{conversation_id}/citations")
async def get_citations(conversation_id: str, x_user_id: str = Header("anonymous")):
    controller = _controller_or_404(conversation_id, x_user_id)
    return controller.citation_panel().to_dict()

@app.post("/conversations/{conversation_id}/intro")
async def send_intro(conversation_id: str, request: IntroRequest, x_user_id: str = Header("anonymous")):
    """Save the user profile from the intro form and stream the first message"""
    controller = _controller_or_404(conversation_id, x_user_id)

    values = request.model_dump()
    missing = [f for f in PROFILE_FIELDS + ["message"] if not values[f].strip()]
    if missing:
        raise HTTPException(status_code=422, detail={"message": "All intro fields are required", "missing_fields": missing})
    if controller.conversation.is_waiting:
        raise HTTPException(status_code=409, detail="A response is still in progress")

    settings_store.update(x_user_id, {f: values[f].strip() for f in PROFILE_FIELDS})
    await _apply_to_user_conversations(x_user_id)
    logger.info(f"Saved intro profile for user {x_user_id}")

    return _sse(controller.send_message(request.message), conversation_id)

@app.post("/conversations/{conversation_id}/messages")
async def send_message_stream(conversation_id: str, request: MessageRequest, x_user_id: str = Header("anonymous")):
    """Streams tokens via SSE (Server Sent Events)"""
    controller = _controller_or_404(conversation_id, x_user_id)
    if controller.conversation.is_waiting:
        raise HTTPException(status_code=409, detail="A response is still in progress")

    if not controller.conversation.turns:
        missing = settings_store.missing_profile_fields(x_user_id)
        if missing:
            raise HTTPException(status_code=422, detail={"message": "Profile fields are required before the first message", "missing_fields": missing})

    logger.info(f"Received message for conversation {conversation_id}: {request.message[:100]}...")
    return _sse(controller.send_message(request.message), conversation_id)


@app.get("/")
async def root():
    return {"message": "Welcome to Dewey Chat API", "docs": "/docs"}
