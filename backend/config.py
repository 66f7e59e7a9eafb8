"""Configuration management for the ChatRelay backend."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Model Configuration
SUPPORTED_MODELS = {
    "deepseek-r1-distill-llama-70b": "DeepSeek R1 Distill (70B)",
    "meta-llama/llama-4-scout-17b-16e-instruct": "Llama 4 Scout (17B)",
    "llama-3.3-70b-versatile": "Llama 3.3 (70B Versatile)",
    "llama-3.1-8b-instant": "Llama 3.1 (8B Instant)",
    "gemma2-9b-it": "Gemma2 (9B)",
    "qwen-qwq-32b": "Qwen (32B)",
}
DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "deepseek-r1-distill-llama-70b")

# Generation Configuration
TEMPERATURE = float(os.getenv("TEMPERATURE", "0.7"))
MAX_TEMPERATURE = 2.0
MAX_TOKENS = int(os.getenv("MAX_TOKENS", "4096"))
MIN_MAX_TOKENS = 4096  # floor applied to every request
TOP_P = float(os.getenv("TOP_P", "1.0"))
SYSTEM_PROMPT = os.getenv(
    "SYSTEM_PROMPT",
    "You are a helpful AI assistant. Provide clear, accurate, and helpful responses. "
    "When providing code, always provide the complete code without truncation, "
    "including all closing tags, brackets, and complete functions."
)

# Conversation Configuration
CONTEXT_WINDOW = int(os.getenv("CONTEXT_WINDOW", "20"))  # turns sent as context
DEFAULT_CHAT_TITLE = "New Chat"
DEFAULT_USER_ID = "default-user"
TITLE_MAX_LENGTH = 20

# Streaming Configuration
MAX_STREAM_CHUNKS = int(os.getenv("MAX_STREAM_CHUNKS", "1000"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
COMPLETION_MARKERS = ("</html>", "</body>", "}", "</script>", "```", "</div>")
COMPLETION_PAUSE_SECONDS = 0.1

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
