"""Wire payloads exchanged with the Ollama API."""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class EmbeddingResponse(BaseModel):
    """Body of ``POST /embeddings``."""

    embedding: List[float] = []
    error: Optional[str] = None


class GenerateResponse(BaseModel):
    """Body of a non-streaming ``POST /generate``."""

    response: str = ""
    error: Optional[str] = None


class GenerateFrame(BaseModel):
    """One frame of a streaming ``POST /generate`` response."""

    response: str = ""
    done: bool = False
    error: Optional[str] = None


class StreamEventType(str, Enum):
    """Events delivered to consumers of a prompt stream."""

    TOKEN = "token"
    COMPLETE = "complete"
    ERROR = "error"


class StreamEvent(BaseModel):
    """A token, the completion signal, or an error ending the stream."""

    event: StreamEventType
    text: str = ""


class StreamState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"
    CANCELLED = "cancelled"
