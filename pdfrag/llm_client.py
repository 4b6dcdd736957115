"""Ollama client: embeddings, blocking prompts and streamed prompts.

API reference: https://github.com/ollama/ollama/blob/main/docs/api.md
"""
import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Type, TypeVar
import httpx
import structlog
from pydantic import BaseModel, ValidationError

from pdfrag import config
from pdfrag.errors import ErrorCallback, ErrorChannel, NetworkError, ProtocolError, RagError
from pdfrag.schemas import (
    EmbeddingResponse,
    GenerateFrame,
    GenerateResponse,
    StreamEvent,
    StreamEventType,
    StreamState,
)
from pdfrag.session import Session
from pdfrag.streaming import FrameDecoder

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)
SessionCallback = Callable[[Session], None]


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error text from a failed response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.text[:200]


def _parse(model: Type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Unexpected {model.__name__} payload: {e}") from e


class OllamaClient:
    """Async client for the Ollama generate and embeddings endpoints."""

    def __init__(
        self,
        api_url: str = None,
        model: str = None,
        embedding_model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        """Initialize Ollama client.

        Args:
            api_url: API base URL (defaults to config.OLLAMA_API_URL)
            model: Default generation model (defaults to config.CHAT_MODEL)
            embedding_model: Embedding model (defaults to config.EMBEDDING_MODEL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport, e.g. a MockTransport in tests
            on_error: Optional callback connected to the error channel
        """
        self.api_url = (api_url or config.OLLAMA_API_URL).rstrip("/")
        self.model = model or config.CHAT_MODEL
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self.transport = transport

        self.errors = ErrorChannel("ollama")
        if on_error is not None:
            self.errors.connect(on_error)
        self._session_callbacks: List[SessionCallback] = []

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        """POST a JSON body and return the decoded JSON response.

        Raises:
            NetworkError: On transport failures, timeouts and non-2xx statuses
            ProtocolError: If the body is not JSON
        """
        try:
            async with self._http() as client:
                response = await client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {path} failed: {e}") from e

        if response.is_error:
            raise NetworkError(
                f"{path} returned HTTP {response.status_code}: {_error_detail(response)}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Invalid JSON from {path}: {e}") from e

    async def embeddings(self, text: str) -> List[float]:
        """Embed a text with the embedding model.

        Args:
            text: Text to embed

        Returns:
            Embedding vector, or an empty list on failure (reported on ``errors``)
        """
        payload = {"model": self.embedding_model, "prompt": text, "stream": False}

        logger.debug(
            "ollama_embedding_request",
            model=self.embedding_model,
            prompt_length=len(text),
        )

        try:
            body = _parse(EmbeddingResponse, await self._post_json("/embeddings", payload))
            if body.error:
                raise ProtocolError(body.error)
            if not body.embedding:
                raise ProtocolError("Empty embedding returned from Ollama")
        except RagError as e:
            self.errors.report(e, model=self.embedding_model, prompt_length=len(text))
            return []

        logger.debug(
            "ollama_embedding_response",
            model=self.embedding_model,
            dimension=len(body.embedding),
        )

        return body.embedding

    async def prompt_blocking(self, text: str, model: str = None) -> str:
        """Send a single prompt without history and wait for the full answer.

        Returns:
            Response text, or "" on failure (reported on ``errors``)
        """
        model = model or self.model
        payload = {"model": model, "prompt": text, "stream": False}

        logger.info("ollama_generate_request", model=model, prompt_length=len(text), stream=False)

        try:
            body = _parse(GenerateResponse, await self._post_json("/generate", payload))
            if body.error:
                raise ProtocolError(body.error)
        except RagError as e:
            self.errors.report(e, model=model)
            return ""

        logger.info("ollama_generate_response", model=model, response_length=len(body.response))

        return body.response

    def prompt(self, session: Session, text: str) -> "PromptStream":
        """Append a question to the session and prepare a streamed answer.

        The whole session history is sent as the prompt. Nothing is
        transmitted until the returned stream is iterated, run or started.
        """
        return PromptStream(self, session, session.add_prompt(text))

    async def list_models(self) -> List[str]:
        """List locally available models, [] on failure."""
        try:
            async with self._http() as client:
                response = await client.get("/tags")
                response.raise_for_status()
                data = response.json()
            return [m["name"] for m in data.get("models", [])]
        except httpx.HTTPError as e:
            self.errors.report(NetworkError(f"Listing models failed: {e}"))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self.errors.report(ProtocolError(f"Unexpected /tags payload: {e}"))
        return []

    # Sessions

    def on_new_session(self, callback: SessionCallback) -> None:
        """Register a callback invoked whenever the conversation is reset."""
        self._session_callbacks.append(callback)

    def _emit_new_session(self, session: Session) -> None:
        logger.info("session_reset", session_id=session.id, model=session.model)
        for callback in list(self._session_callbacks):
            callback(session)

    def new_session(self, model: str = None) -> Session:
        return Session(model=model or self.model)

    def reset(self, session: Session) -> Session:
        """Clear history: returns a fresh session and notifies listeners."""
        fresh = session.reset()
        self._emit_new_session(fresh)
        return fresh

    def switch_model(self, session: Session, model: str) -> Session:
        """Change the active model; a real change starts a new session."""
        fresh = session.switch_model(model)
        if fresh is not session:
            self._emit_new_session(fresh)
        return fresh


class PromptStream:
    """One streamed answer: IDLE -> REQUESTING -> STREAMING -> DONE | ERRORED.

    Iterate it for StreamEvent objects, ``await run(...)`` with callbacks, or
    ``start(...)`` it as a background task. ``cancel()`` stops delivery and
    closes the connection; no token event follows a cancel.
    """

    def __init__(self, client: OllamaClient, session: Session, prompt: str):
        self.client = client
        self.session = session
        self.prompt = prompt
        self.state = StreamState.IDLE
        self.response = ""
        self._cancelled = False
        self._consumed = False
        self._task: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None  # task iterating the stream
        self._waiting = False  # reader is suspended on the next frame
        self._interrupted = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RuntimeError("A prompt stream can only be consumed once")
        self._consumed = True
        return self._events()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def _frames(self) -> AsyncIterator[GenerateFrame]:
        payload = {"model": self.session.model, "prompt": self.prompt}

        logger.info(
            "ollama_generate_request",
            model=self.session.model,
            prompt_length=len(self.prompt),
            session_id=self.session.id,
            stream=True,
        )

        try:
            async with self.client._http() as http:
                async with http.stream("POST", "/generate", json=payload) as response:
                    if response.is_error:
                        await response.aread()
                        raise NetworkError(
                            f"/generate returned HTTP {response.status_code}: "
                            f"{_error_detail(response)}"
                        )

                    self.state = StreamState.STREAMING
                    decoder = FrameDecoder()
                    async for chunk in response.aiter_bytes():
                        for frame in decoder.feed(chunk):
                            yield frame
                    for frame in decoder.close():
                        yield frame
        except httpx.TimeoutException as e:
            raise NetworkError(f"Streaming request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Streaming request failed: {e}") from e

    async def _events(self) -> AsyncIterator[StreamEvent]:
        if self._cancelled:
            return

        self.state = StreamState.REQUESTING
        self._reader = asyncio.current_task()
        frames = self._frames()
        try:
            while True:
                self._waiting = True
                try:
                    frame = await frames.__anext__()
                except StopAsyncIteration:
                    break
                finally:
                    self._waiting = False

                if self._cancelled:
                    return
                if frame.error:
                    raise ProtocolError(frame.error)

                if frame.done:
                    self.session.end_turn()
                    self.state = StreamState.DONE
                    logger.info(
                        "ollama_stream_completed",
                        session_id=self.session.id,
                        response_length=len(self.response),
                    )
                    yield StreamEvent(event=StreamEventType.COMPLETE)
                    return

                self.response += frame.response
                self.session.add_response(frame.response)
                yield StreamEvent(event=StreamEventType.TOKEN, text=frame.response)
                if self._cancelled:
                    return

            if not self._cancelled:
                raise ProtocolError("Stream ended before completion")

        except RagError as e:
            self.state = StreamState.ERRORED
            self.client.errors.report(e, session_id=self.session.id)
            yield StreamEvent(event=StreamEventType.ERROR, text=str(e))

        except asyncio.CancelledError:
            if self.state not in (StreamState.DONE, StreamState.ERRORED):
                self.state = StreamState.CANCELLED
            if not self._interrupted:
                raise
            # Interrupted by cancel() from another task: end iteration normally
            self._interrupted = False
            task = asyncio.current_task()
            if hasattr(task, "uncancel"):
                task.uncancel()

        except GeneratorExit:
            if self.state not in (StreamState.DONE, StreamState.ERRORED):
                self.state = StreamState.CANCELLED
            raise

        finally:
            self._reader = None
            await frames.aclose()

    async def run(
        self,
        on_token: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Consume the stream, dispatching each event to a callback.

        Returns:
            The text received for this turn
        """
        async for event in self:
            if event.event is StreamEventType.TOKEN:
                if on_token:
                    on_token(event.text)
            elif event.event is StreamEventType.COMPLETE:
                if on_complete:
                    on_complete()
            elif on_error:
                on_error(event.text)
        return self.response

    def start(
        self,
        on_token: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> asyncio.Task:
        """Run the stream in a background task on the current event loop."""
        self._task = asyncio.create_task(self.run(on_token, on_complete, on_error))
        return self._task

    def cancel(self) -> None:
        """Abort the stream. Safe to call from callbacks and other tasks."""
        if self.state in (StreamState.DONE, StreamState.ERRORED, StreamState.CANCELLED):
            return

        self._cancelled = True
        self.state = StreamState.CANCELLED
        # From inside the consuming task (e.g. a token callback) the loop stops at the next frame
        current = asyncio.current_task()
        if self._task is not None:
            if not self._task.done() and self._task is not current:
                self._task.cancel()
        elif self._reader is not None and self._reader is not current and self._waiting:
            # Wake a direct consumer blocked on the network; the response is closed on unwind
            self._interrupted = True
            self._reader.cancel()

        logger.info("ollama_stream_cancelled", session_id=self.session.id)
