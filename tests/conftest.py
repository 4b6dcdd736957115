"""Shared fixtures: a scripted Ollama backend and a temporary store."""
import asyncio
import json
from typing import Dict, List, Optional

import httpx
import pytest

from pdfrag.db import EmbeddingStore
from pdfrag.llm_client import OllamaClient

API_URL = "http://ollama.test/api"


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered as separate network reads.

    ``None`` in the chunk list blocks forever, simulating a slow model.
    """

    def __init__(self, chunks: List[Optional[bytes]]):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            if chunk is None:
                await asyncio.Event().wait()
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def frames(*objects: dict) -> bytes:
    """Newline-delimited JSON frames."""
    return b"".join(json.dumps(obj).encode() + b"\n" for obj in objects)


class FakeOllama:
    """Scripted stand-in for the Ollama HTTP API."""

    def __init__(self):
        self.requests: List[Dict] = []
        self.vectors: Dict[str, List[float]] = {}
        self.embedding_errors: Dict[str, str] = {}
        self.stream_chunks: List[Optional[bytes]] = [
            frames(
                {"response": "Hel", "done": False},
                {"response": "lo", "done": False},
                {"done": True},
            )
        ]
        self.blocking_response = {"response": "Blocking answer", "done": True}
        self.streams: List[ChunkStream] = []
        self.status_code = 200

    def embedding_for(self, text: str) -> List[float]:
        """Distinct deterministic vector per distinct text."""
        if text not in self.vectors:
            self.vectors[text] = [1.0, float(len(self.vectors) + 1), 0.5]
        return self.vectors[text]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append({"path": request.url.path, "body": body})

        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "model not loaded"})

        if request.url.path.endswith("/embeddings"):
            prompt = body["prompt"]
            if prompt in self.embedding_errors:
                return httpx.Response(200, json={"error": self.embedding_errors[prompt]})
            return httpx.Response(200, json={"embedding": self.embedding_for(prompt)})

        if request.url.path.endswith("/generate"):
            if body.get("stream") is False:
                return httpx.Response(200, json=self.blocking_response)
            stream = ChunkStream(list(self.stream_chunks))
            self.streams.append(stream)
            return httpx.Response(200, stream=stream)

        if request.url.path.endswith("/tags"):
            return httpx.Response(200, json={"models": [{"name": "llama3"}, {"name": "mistral"}]})

        return httpx.Response(404, json={"error": "not found"})

    def generate_prompts(self) -> List[str]:
        return [
            r["body"]["prompt"]
            for r in self.requests
            if r["path"].endswith("/generate")
        ]


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def reported_errors() -> List[str]:
    return []


@pytest.fixture
def client(fake_ollama, reported_errors) -> OllamaClient:
    return OllamaClient(
        api_url=API_URL,
        model="llama3",
        embedding_model="nomic-embed-text",
        transport=httpx.MockTransport(fake_ollama),
        on_error=reported_errors.append,
    )


@pytest.fixture
def store(tmp_path, reported_errors):
    store = EmbeddingStore(db_path=tmp_path / "embeddings.db", on_error=reported_errors.append)
    yield store
    store.close()
