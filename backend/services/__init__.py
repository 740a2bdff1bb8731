"""Services for the Turn Ledger service."""
from .hashing import GENESIS_HASH, hash_turn_content, link_chain_hash
from .turn_store import TurnStore, SQLTurnStore, ConstraintViolation
from .supabase_turn_store import SupabaseTurnStore
from .context_assembler import ContextAssembler
from .llm_client import InferenceProvider, GroqProvider, OllamaProvider, OpenAIProvider, AnthropicProvider, create_provider
from .llm_client import LLMResponse, LLMError, LLMClientError
from .response_parser import InvalidResponseError, parse_structured_response
from .document_loader import DocumentLoader
from .chunking_engine import ChunkingEngine
from .retrieval_engine import RetrievalProvider, KeywordRetriever
from .ledger_service import LedgerService, LedgerError, InferenceFailedError, InvalidModelResponseError, TurnConflictError, TurnNotFoundError
from .verifier import ChainVerifier

__all__ = ['GENESIS_HASH', 'hash_turn_content', 'link_chain_hash', 'TurnStore', 'SQLTurnStore', 'ConstraintViolation', 'SupabaseTurnStore', 'ContextAssembler', 'InferenceProvider', 'GroqProvider', 'OllamaProvider', 'OpenAIProvider', 'AnthropicProvider', 'create_provider', 'LLMResponse', 'LLMError', 'LLMClientError', 'InvalidResponseError', 'parse_structured_response', 'DocumentLoader', 'ChunkingEngine', 'RetrievalProvider', 'KeywordRetriever', 'LedgerService', 'LedgerError', 'InferenceFailedError', 'InvalidModelResponseError', 'TurnConflictError', 'TurnNotFoundError', 'ChainVerifier']
