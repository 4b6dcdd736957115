"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "embeddings.db")))

# Ollama configuration
OLLAMA_API_URL = os.getenv("OLLAMA_API_URL", "http://localhost:11434/api")
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama3")
ANSWER_MODEL = os.getenv("ANSWER_MODEL", "mistral")  # Model used for RAG answers
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "120.0"))

# RAG parameters (character-based)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "800"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "80"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
VECTOR_INDEX = os.getenv("VECTOR_INDEX", "linear")  # "linear" or "faiss"

PROMPT_TEMPLATE = os.getenv(
    "PROMPT_TEMPLATE",
    "Answer the question based only on the following context:\n\n{context}\n\n---\n\n"
    "Answer only the question based on the above context and do not start a "
    "conversation: {question}",
)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
