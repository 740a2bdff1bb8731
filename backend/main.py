"""Main entry point for the Turn Ledger API."""
import logging
from typing import List, Optional

import tiktoken
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import (
    CONFIG_PATH,
    CORS_ORIGINS,
    DATABASE_URL,
    LOG_FORMAT,
    LOG_LEVEL,
    PORT,
    TURN_STORE_BACKEND,
    Settings,
    load_settings,
)
from logger import setup_logging
from models.api import (
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    InvalidTurnDetail,
    ResponseMetadata,
    TokenUsage,
    Trace,
    TurnRecord,
    VerificationResponse,
)
from models.turn import Turn
from models.verification import VerificationResult
from services.context_assembler import ContextAssembler
from services.ledger_service import LedgerError, LedgerService, TurnNotFoundError
from services.llm_client import create_provider
from services.retrieval_engine import KeywordRetriever
from services.supabase_turn_store import SupabaseTurnStore
from services.turn_store import SQLTurnStore, TurnStore
from services.verifier import ChainVerifier

if LOG_FORMAT == "json":
    setup_logging(LOG_LEVEL)

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Turn Ledger",
    description="Stateless LLM conversation service with a tamper-evident turn ledger",
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

# Initialize services (will be done on startup)
settings: Settings = None
turn_store: TurnStore = None
ledger_service: LedgerService = None
verifier: ChainVerifier = None
tiktoken_encoder = None


def create_turn_store(backend: str = TURN_STORE_BACKEND) -> TurnStore:
    """Build the turn store named by TURN_STORE_BACKEND."""
    if backend == "sqlite":
        return SQLTurnStore(DATABASE_URL)
    if backend == "supabase":
        return SupabaseTurnStore()
    raise ValueError(f"Unsupported turn store backend: {backend}")


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global settings, turn_store, ledger_service, verifier, tiktoken_encoder

    logger.info("Initializing Turn Ledger services...")

    try:
        settings = load_settings(CONFIG_PATH)

        # Initialize tiktoken encoder for prompt token counting
        tiktoken_encoder = tiktoken.get_encoding("o200k_base")
        logger.info("Initialized tiktoken encoder (o200k_base)")

        turn_store = create_turn_store()
        logger.info(f"Initialized {type(turn_store).__name__}")

        provider = create_provider(settings.provider)
        logger.info(f"Initialized {settings.provider.name} provider")

        retriever = None
        if settings.retrieval.documents_path:
            retriever = KeywordRetriever.from_directory(
                settings.retrieval.documents_path,
                max_results=settings.retrieval.max_results,
                min_score=settings.retrieval.min_score,
                chunk_size=settings.retrieval.chunk_size,
                chunk_overlap=settings.retrieval.chunk_overlap,
            )
            logger.info("Initialized KeywordRetriever")

        ledger_service = LedgerService(
            store=turn_store,
            provider=provider,
            assembler=ContextAssembler(settings.instructions, settings.prompt_order),
            retriever=retriever,
            retrieval_timeout=settings.retrieval.timeout,
            history_max_turns=settings.history_max_turns,
            store_full_prompt=settings.store_full_prompt,
            token_counter=lambda text: len(tiktoken_encoder.encode(text)),
        )
        verifier = ChainVerifier(turn_store)

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Release the retrieval pool and database connections."""
    if ledger_service is not None:
        ledger_service.close()
    if turn_store is not None:
        turn_store.close()


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "details": exc.details
            }
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Rejected input is not echoed back; it may not be encodable as UTF-8
    errors = [
        {key: value for key, value in error.items() if key != "input"}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Turn Ledger API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "turn-ledger",
        "version": "1.0.0"
    }


@app.get("/context")
async def context():
    """Display settings for chat front-ends (name, placeholder, first message)."""
    return settings.display if settings else {}


@app.post(
    "/chat",
    response_model=ChatResponse,
    responses={
        409: {"model": ErrorResponse, "description": "Declared turn index is stale"},
        502: {"model": ErrorResponse, "description": "Model output is not a JSON object"},
        503: {"model": ErrorResponse, "description": "Inference provider failed"},
    },
)
def chat_endpoint(request: ChatRequest) -> ChatResponse:
    """
    Submit one user prompt and record the exchange as a new turn.

    Runs in the worker threadpool; the ledger serializes writers per
    conversation, so simultaneous requests on one conversation become
    consecutive turns.

    Args:
        request: ChatRequest with the prompt, optional conversation id and
            the caller's view of the previous turn number

    Returns:
        ChatResponse with the structured answer, assigned turn index and chain hash

    Raises:
        LedgerError: Rendered as {"error": {...}} with the error's status code
        HTTPException: For unexpected failures
    """
    logger.info(f"Processing chat request: {request.user_prompt[:100]}...")

    try:
        result = ledger_service.submit_turn(
            user_prompt=request.user_prompt,
            conversation_id=request.conversation_id,
            turn_index=request.turn_index,
            include_history=request.include_history,
        )
    except LedgerError:
        # Rendered by ledger_error_handler
        raise
    except Exception as e:
        logger.error(f"Unexpected error processing chat request: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Internal server error: {str(e)}"
        )

    return ChatResponse(
        response=result.structured_response,
        conversation_id=result.conversation_id,
        turn_index=result.turn_index,
        chain_hash=result.chain_hash,
        hash_msg=f"Turn {result.turn_index} recorded with chain hash {result.chain_hash[:16]}...",
        trace=Trace(
            request_timestamp=result.trace.request_timestamp,
            response_timestamp=result.trace.response_timestamp,
            duration_ms=result.trace.duration_ms,
            method=result.trace.method,
            model=result.trace.model,
            url=result.trace.url,
        ),
        metadata=ResponseMetadata(
            model_used=result.metadata["model"],
            tokens=TokenUsage(
                input=result.metadata["tokens_input"],
                output=result.metadata["tokens_output"]
            ),
            prompt_tokens=result.prompt_tokens,
            history_turns=result.metadata["history_turns"],
        ),
        latency_ms=result.latency_ms,
    )


@app.get("/verify", response_model=VerificationResponse)
def verify_all() -> VerificationResponse:
    """Verify every conversation in the ledger."""
    return _to_response(verifier.verify())


@app.get("/verify/{conversation_id}", response_model=VerificationResponse)
def verify_conversation(conversation_id: str) -> VerificationResponse:
    """Verify a single conversation."""
    return _to_response(verifier.verify(conversation_id))


@app.get("/history", response_model=List[TurnRecord])
def history_all() -> List[TurnRecord]:
    """Return every recorded turn, ordered by conversation and turn index."""
    return [_to_record(turn) for turn in turn_store.all_turns_ordered()]


@app.get(
    "/history/{conversation_id}",
    response_model=List[TurnRecord],
    responses={404: {"model": ErrorResponse, "description": "Turn not found"}},
)
def history_conversation(conversation_id: str, turn: Optional[int] = None) -> List[TurnRecord]:
    """
    Return the turns of one conversation.

    Args:
        conversation_id: Conversation to read
        turn: Optional turn index; when given only that turn is returned

    Raises:
        TurnNotFoundError: The requested turn is not in the ledger
    """
    turns = turn_store.all_turns_ordered(conversation_id)
    if turn is not None:
        turns = [t for t in turns if t.turn_index == turn]
        if not turns:
            raise TurnNotFoundError(
                f"Turn {turn} not found in conversation {conversation_id}",
                details={"conversation_id": conversation_id, "turn_index": turn},
            )
    return [_to_record(t) for t in turns]


def _to_record(turn: Turn) -> TurnRecord:
    return TurnRecord(
        conversation_id=turn.conversation_id,
        turn_index=turn.turn_index,
        user_prompt=turn.user_prompt,
        response=turn.response,
        machine_state=turn.machine_state,
        content_hash=turn.content_hash,
        chain_hash=turn.chain_hash,
        retrieved_context=turn.retrieved_context,
        created_at=turn.created_at,
    )


def _to_response(result: VerificationResult) -> VerificationResponse:
    return VerificationResponse(
        valid=result.valid,
        total_turns=result.total_turns,
        invalid_turns=result.invalid_turns,
        conversations_verified=result.conversations_verified,
        message=result.message,
        invalid=[
            InvalidTurnDetail(
                conversation_id=turn.conversation_id,
                turn_index=turn.turn_index,
                content_valid=turn.content_valid,
                chain_valid=turn.chain_valid,
            )
            for turn in result.invalid
        ],
    )


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Turn Ledger API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
