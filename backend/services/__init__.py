"""Services for the ChatRelay backend."""
from .errors import ErrorDetail, ChatAppError, ConfigurationError, ValidationError, NotFoundError, ProviderError
from .conversation_manager import ConversationManager, create_supabase_client
from .llm_client import LLMClient, LLMResponse, GenerationOptions, StreamFragment
from .stream_reducer import StreamReducer, ReducerState, ReductionResult, strip_reasoning
from .chat_service import ChatService, ChatReply, CompletionResult, derive_title

__all__ = ['ErrorDetail', 'ChatAppError', 'ConfigurationError', 'ValidationError', 'NotFoundError', 'ProviderError', 'ConversationManager', 'create_supabase_client', 'LLMClient', 'LLMResponse', 'GenerationOptions', 'StreamFragment', 'StreamReducer', 'ReducerState', 'ReductionResult', 'strip_reasoning', 'ChatService', 'ChatReply', 'CompletionResult', 'derive_title']
