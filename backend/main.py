"""Main entry point for the ChatRelay API."""
import asyncio
import json
import logging
import tiktoken
from typing import Any, Dict
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import PORT, LOG_LEVEL, LOG_FORMAT, CORS_ORIGINS, SUPPORTED_MODELS, DEFAULT_MODEL
from logger import setup_logging
from models.api import (
    CreateChatRequest,
    UpdateChatRequest,
    GenerationRequest,
    SendMessageRequest,
    StartChatRequest,
    UpdateMessageRequest,
    CompletionRequest,
    ChatPayload,
    MessagePayload,
    ChatResponse,
    ModelInfo,
    ModelsResponse,
    CompletionResponse,
)
from services.chat_service import ChatService, ChatReply
from services.conversation_manager import ConversationManager, create_supabase_client
from services.errors import ChatAppError, ConfigurationError
from services.llm_client import LLMClient, GenerationOptions

if LOG_FORMAT == "json":
    setup_logging(LOG_LEVEL)

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="ChatRelay",
    description="Chat backend persisting conversations and relaying them to Groq-hosted LLMs",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize services once; every request reuses them via app.state."""
    logger.info("Initializing ChatRelay services...")

    try:
        # Initialize tiktoken encoder for prompt token counting
        tiktoken_encoder = tiktoken.get_encoding("o200k_base")
        logger.info("Initialized tiktoken encoder (o200k_base)")

        conversation_manager = ConversationManager(create_supabase_client())
        logger.info("Initialized ConversationManager")

        llm_client = LLMClient()
        logger.info("Initialized LLMClient")

        app.state.conversation_manager = conversation_manager
        app.state.chat_service = ChatService(
            conversation_manager,
            llm_client,
            token_encoder=tiktoken_encoder
        )
        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_conversation_manager(request: Request) -> ConversationManager:
    manager = getattr(request.app.state, "conversation_manager", None)
    if manager is None:
        raise ConfigurationError("Message store is not configured")
    return manager


def get_chat_service(request: Request) -> ChatService:
    chat_service = getattr(request.app.state, "chat_service", None)
    if chat_service is None:
        raise ConfigurationError("Chat service is not configured")
    return chat_service


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------

def _error_body(code: str, message: str, details: Dict[str, Any] = None) -> Dict[str, Any]:
    body = {"success": False, "error": message, "code": code}
    if details:
        body["details"] = jsonable_encoder(details)
    return body


@app.exception_handler(ChatAppError)
async def chat_app_error_handler(request: Request, exc: ChatAppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.error.code} on {request.method} {request.url.path}: {exc.error.message}")
    else:
        logger.info(f"{exc.error.code} on {request.method} {request.url.path}: {exc.error.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.error.code, exc.error.message, exc.error.details)
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=_error_body("REQUEST_VALIDATION_ERROR", "Invalid request body", {"errors": exc.errors()})
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=_error_body("UNKNOWN_ERROR", "Internal server error")
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _generation_options(request: GenerationRequest) -> GenerationOptions:
    return GenerationOptions.build(
        model=request.model,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
        top_p=request.top_p,
        stop=request.stop
    )


def _reply_response(reply: ChatReply) -> ChatResponse:
    user_message = MessagePayload.from_turn(reply.user_turn)
    assistant_message = MessagePayload.from_turn(reply.assistant_turn)
    return ChatResponse(
        chat=ChatPayload.from_conversation(reply.conversation),
        user_message=user_message,
        assistant_message=assistant_message,
        messages=[user_message, assistant_message],
        state=reply.state.value
    )


def _sse(event: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(event)}\n\n".encode("utf-8")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "ChatRelay API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "chatrelay",
        "version": "1.0.0"
    }


@app.get("/api/models", response_model=ModelsResponse)
async def list_models() -> ModelsResponse:
    """Models the chat endpoints accept."""
    return ModelsResponse(
        models=[ModelInfo(value=value, label=label) for value, label in SUPPORTED_MODELS.items()],
        default=DEFAULT_MODEL
    )


@app.get("/api/chats", response_model=ChatResponse, response_model_exclude_none=True)
def list_chats(manager: ConversationManager = Depends(get_conversation_manager)) -> ChatResponse:
    """List chats, most recently updated first."""
    chats = manager.list_conversations()
    return ChatResponse(chats=[ChatPayload.from_conversation(chat) for chat in chats])


@app.post("/api/chats", response_model=ChatResponse, response_model_exclude_none=True)
def create_chat(
    request: CreateChatRequest,
    manager: ConversationManager = Depends(get_conversation_manager)
) -> ChatResponse:
    """Create an empty chat ("New Chat" unless a title is given)."""
    chat = manager.create_conversation(title=request.title)
    return ChatResponse(chat=ChatPayload.from_conversation(chat))


@app.get("/api/chats/{chat_id}", response_model=ChatResponse, response_model_exclude_none=True)
def get_chat(chat_id: str, manager: ConversationManager = Depends(get_conversation_manager)) -> ChatResponse:
    """Get a chat together with all of its messages."""
    chat = manager.get_conversation(chat_id)
    turns = manager.list_turns(chat_id)
    chat.message_count = len(turns)
    return ChatResponse(
        chat=ChatPayload.from_conversation(chat),
        messages=[MessagePayload.from_turn(turn) for turn in turns]
    )


@app.put("/api/chats/{chat_id}", response_model=ChatResponse, response_model_exclude_none=True)
def update_chat(
    chat_id: str,
    request: UpdateChatRequest,
    manager: ConversationManager = Depends(get_conversation_manager)
) -> ChatResponse:
    """Rename a chat."""
    chat = manager.update_title(chat_id, request.title)
    chat.message_count = manager.count_turns(chat_id)
    return ChatResponse(chat=ChatPayload.from_conversation(chat))


@app.delete("/api/chats/{chat_id}", response_model=ChatResponse, response_model_exclude_none=True)
def delete_chat(chat_id: str, manager: ConversationManager = Depends(get_conversation_manager)) -> ChatResponse:
    """Delete a chat and all of its messages."""
    manager.delete_conversation(chat_id)
    return ChatResponse(message="Chat deleted successfully")


@app.get("/api/chats/{chat_id}/messages", response_model=ChatResponse, response_model_exclude_none=True)
def list_messages(chat_id: str, manager: ConversationManager = Depends(get_conversation_manager)) -> ChatResponse:
    """List a chat's messages, oldest first."""
    manager.get_conversation(chat_id)
    turns = manager.list_turns(chat_id)
    return ChatResponse(messages=[MessagePayload.from_turn(turn) for turn in turns])


@app.post("/api/chats/{chat_id}/messages", response_model=ChatResponse, response_model_exclude_none=True)
async def send_message(
    chat_id: str,
    request: SendMessageRequest,
    chat_service: ChatService = Depends(get_chat_service)
) -> ChatResponse:
    """
    Append a user message and reply to it.

    The user message is stored first, the most recent messages are sent to
    the provider as context, and the reply is stored once the stream has been
    reduced. Both stored messages are returned.
    """
    options = _generation_options(request)
    reply = await chat_service.send_message(chat_id, request.content, options, stream=request.stream)
    return _reply_response(reply)


@app.post("/api/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def start_chat(
    request: StartChatRequest,
    chat_service: ChatService = Depends(get_chat_service)
) -> ChatResponse:
    """Send a message, creating a new chat when no conversationId is given."""
    options = _generation_options(request)
    reply = await chat_service.send_message(
        request.conversation_id, request.content, options, stream=request.stream
    )
    return _reply_response(reply)


@app.post("/api/chats/{chat_id}/messages/stream")
async def stream_message(
    chat_id: str,
    request: SendMessageRequest,
    chat_service: ChatService = Depends(get_chat_service)
):
    """
    Streaming variant of send_message using Server-Sent Events.

    Returns:
        StreamingResponse with SSE format:
        - data: {type: "token", content: "..."} for each text piece
        - data: {type: "done", data: {...}} with both stored messages
        - data: {type: "error", error: {...}} if the provider failed
    """
    options = _generation_options(request)
    conversation, user_turn = await asyncio.to_thread(chat_service.start_turn, chat_id, request.content)

    async def generate_stream():
        """Generator function for streaming response."""
        try:
            async for kind, value in chat_service.stream_reply(conversation, user_turn, options):
                if kind == "token":
                    yield _sse({"type": "token", "content": value})
                else:
                    payload = _reply_response(value).model_dump(mode="json", by_alias=True, exclude_none=True)
                    yield _sse({"type": "done", "data": payload})
        except ChatAppError as e:
            logger.error(f"Error during streaming: {e.error.message}")
            yield _sse({
                "type": "error",
                "error": {"code": e.error.code, "message": e.error.message}
            })
        except Exception as e:
            logger.error(f"Unexpected error during streaming: {e}", exc_info=True)
            yield _sse({
                "type": "error",
                "error": {"code": "UNKNOWN_ERROR", "message": "Internal server error"}
            })

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable buffering in nginx
        }
    )


@app.put("/api/messages/{message_id}", response_model=ChatResponse, response_model_exclude_none=True)
def update_message(
    message_id: str,
    request: UpdateMessageRequest,
    manager: ConversationManager = Depends(get_conversation_manager)
) -> ChatResponse:
    """Replace a message's content."""
    turn = manager.update_turn_content(message_id, request.content)
    return ChatResponse(message=MessagePayload.from_turn(turn))


@app.delete("/api/messages/{message_id}", response_model=ChatResponse, response_model_exclude_none=True)
def delete_message(message_id: str, manager: ConversationManager = Depends(get_conversation_manager)) -> ChatResponse:
    """Delete a single message."""
    manager.delete_turn(message_id)
    return ChatResponse(message="Message deleted successfully")


@app.post("/api/completions", response_model=CompletionResponse)
async def completion(
    request: CompletionRequest,
    chat_service: ChatService = Depends(get_chat_service)
) -> CompletionResponse:
    """One-off streamed completion for trying models and prompts; nothing is stored."""
    options = _generation_options(request)
    system_prompt = request.system_prompt or chat_service.system_prompt or ""
    result = await chat_service.complete_once(request.message, options, system_prompt=system_prompt)

    return CompletionResponse(
        response=result.text,
        model=options.model,
        temperature=options.temperature,
        max_tokens=options.effective_max_tokens,
        input_message=request.message,
        system_prompt=system_prompt,
        chunk_count=result.fragment_count,
        response_length=len(result.text),
        prompt_tokens=result.prompt_tokens,
        state=result.state.value
    )


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting ChatRelay API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
