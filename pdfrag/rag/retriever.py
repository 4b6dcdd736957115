"""Question answering over the embedding store.

Handles:
- Question embedding
- Top-k chunk retrieval
- Context and prompt construction
- Streaming the answer and citing sources
"""
from dataclasses import dataclass, field
from typing import List, Optional
import structlog

from pdfrag import config
from pdfrag.db import EmbeddingStore, SearchResult
from pdfrag.llm_client import OllamaClient, PromptStream
from pdfrag.session import Session

logger = structlog.get_logger()


@dataclass
class Answer:
    """A pending streamed answer and the chunks it was grounded on."""

    session: Session
    stream: PromptStream
    sources: List[SearchResult] = field(default_factory=list)

    def citations(self) -> List[str]:
        """Markdown links ``[label](sequence)`` for each source chunk."""
        return [format_citation(result) for result in self.sources]


def format_citation(result: SearchResult) -> str:
    """Short label for a chunk id, linked to its sequence number."""
    label = result.chunk_id.replace(".pdf", "").replace("-", "")
    return f"[{label}]({result.sequence})"


def build_context(results: List[SearchResult]) -> str:
    """Concatenate retrieved chunk texts into one context block."""
    return "".join(f"{result.text}\n\n" for result in results)


class Retriever:
    """Retrieves context for questions and prompts the model with it."""

    def __init__(
        self,
        store: EmbeddingStore,
        client: OllamaClient,
        top_k: int = None,
        answer_model: Optional[str] = None,
        prompt_template: str = None,
    ):
        """Initialize the retriever.

        Args:
            store: Embedding store to search
            client: Client for embeddings and generation
            top_k: Number of chunks per question (default from config)
            answer_model: Model to answer with; None keeps the session's model
            prompt_template: Template with {context} and {question} fields
        """
        self.store = store
        self.client = client
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.answer_model = answer_model
        self.prompt_template = prompt_template or config.PROMPT_TEMPLATE

        logger.info(
            "retriever_initialized",
            top_k=self.top_k,
            answer_model=self.answer_model,
        )

    async def retrieve(self, question: str, top_k: Optional[int] = None) -> List[SearchResult]:
        """Top-k chunks for a question; [] if it is empty or cannot be embedded."""
        if not question or not question.strip():
            logger.warning("empty_query_provided")
            return []

        embedding = await self.client.embeddings(question)
        if not embedding:
            logger.warning("query_embedding_failed", query_preview=question[:100])
            return []

        return self.store.find_documents(embedding, top_k or self.top_k)

    async def ask(
        self, session: Session, question: str, top_k: Optional[int] = None
    ) -> Optional[Answer]:
        """Retrieve context for a question and prepare the streamed answer.

        If the question cannot be embedded the query is aborted and the
        session history is left as it was.

        Returns:
            Answer holding the (possibly new) session and the prompt stream,
            or None if the query was aborted
        """
        if not question or not question.strip():
            logger.warning("empty_query_provided")
            return None

        embedding = await self.client.embeddings(question)
        if not embedding:
            logger.warning("question_aborted", query_preview=question[:100])
            return None

        results = self.store.find_documents(embedding, top_k or self.top_k)

        if self.answer_model:
            session = self.client.switch_model(session, self.answer_model)

        prompt = self.prompt_template.format(
            context=build_context(results),
            question=question,
        )

        logger.info(
            "question_prepared",
            session_id=session.id,
            sources=len(results),
            prompt_length=len(prompt),
        )

        return Answer(
            session=session,
            stream=self.client.prompt(session, prompt),
            sources=results,
        )

    def resolve_citation(self, sequence: int) -> Optional[str]:
        """Name of the document a cited chunk came from."""
        document = self.store.document_at(sequence)
        if document is None:
            logger.warning("citation_not_found", sequence=sequence)
            return None
        return document.source
