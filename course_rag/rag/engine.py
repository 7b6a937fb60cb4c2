"""RAG orchestrator: knowledge base lifecycle and question answering.

Flow per question:
- Initialize the knowledge base if needed (cache fast path or full build)
- Retrieve the best units for the question
- Group them per source in page order and build citations
- Render one of four prompt variants and hand it to the generator
- Append the reference list (or a general-knowledge notice)
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Protocol

import structlog

from course_rag import config
from course_rag.llm_client import llm_client
from course_rag.rag.context import build_citations, build_context, group_by_source
from course_rag.rag.embeddings import EmbeddingProvider
from course_rag.rag.ingest import DocumentProcessor
from course_rag.rag.models import RAGAnswer
from course_rag.rag.persistence import KnowledgeCache
from course_rag.rag.prompts import PromptLibrary, select_variant
from course_rag.rag.store import KnowledgeStore
from course_rag.rag.streaming import TokenStream

logger = structlog.get_logger()

REFERENCES_HEADER = "\n\nReferences:\n"
GENERAL_KNOWLEDGE_NOTICE = (
    "This answer is based on general knowledge; no course material was referenced."
)


class TextGenerator(Protocol):
    """Remote text generation service."""

    async def generate(self, prompt: str) -> str:
        ...

    def stream(self, prompt: str) -> AsyncIterator[str]:
        ...


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ANSWERING = "answering"
    REINITIALIZING = "reinitializing"


class EngineStateError(RuntimeError):
    """Raised when an operation is not allowed in the current state."""


@dataclass
class PreparedPrompt:
    """Everything needed to generate and attribute one answer."""

    prompt: str
    variant: str
    sources: List[str]

    @property
    def grounded(self) -> bool:
        return bool(self.sources)


def format_references(sources: List[str]) -> str:
    """Reference footer appended after the generated text."""
    if not sources:
        return REFERENCES_HEADER + GENERAL_KNOWLEDGE_NOTICE + "\n"
    return REFERENCES_HEADER + "".join(f"- {source}\n" for source in sources)


def format_error(error: Exception) -> str:
    return f"\n[Error] Failed to generate response: {error}"


class RAGEngine:
    """Answers questions about the course materials."""

    def __init__(
        self,
        processor: Optional[DocumentProcessor] = None,
        store: Optional[KnowledgeStore] = None,
        generator: Optional[TextGenerator] = None,
        prompts: Optional[PromptLibrary] = None,
        top_k: int = None,
        grounding_threshold: float = None,
        max_context_chars: int = None,
    ):
        """Initialize the engine.

        Args:
            processor: Document processor for full builds (default from config)
            store: Knowledge store (default: persistent store with remote embeddings)
            generator: Text generation client (default: shared LLM client)
            prompts: Prompt library (default from config)
            top_k: Units retrieved per question (default from config)
            grounding_threshold: Minimum similarity for a unit to ground an answer
            max_context_chars: Context budget in characters (0 = unlimited)
        """
        self.processor = processor if processor is not None else DocumentProcessor()
        # KnowledgeStore defines __len__, so an empty store is falsy
        self.store = (
            store
            if store is not None
            else KnowledgeStore(provider=EmbeddingProvider(), cache=KnowledgeCache())
        )
        self.generator = generator if generator is not None else llm_client
        self.prompts = prompts if prompts is not None else PromptLibrary()
        self.top_k = top_k or config.MAX_RETRIEVAL_RESULTS
        self.grounding_threshold = (
            grounding_threshold
            if grounding_threshold is not None
            else config.GROUNDING_THRESHOLD
        )
        self.max_context_chars = (
            max_context_chars if max_context_chars is not None else config.MAX_CONTEXT_CHARS
        )

        self._lifecycle = EngineState.UNINITIALIZED
        self._active_answers = 0
        self._init_lock = asyncio.Lock()

        logger.info(
            "rag_engine_created",
            top_k=self.top_k,
            grounding_threshold=self.grounding_threshold,
        )

    @property
    def state(self) -> EngineState:
        if self._lifecycle is EngineState.READY and self._active_answers:
            return EngineState.ANSWERING
        return self._lifecycle

    @property
    def is_initialized(self) -> bool:
        return self._lifecycle is EngineState.READY

    @property
    def indexed_unit_count(self) -> int:
        return len(self.store)

    def start(self) -> "asyncio.Task[None]":
        """Schedule initialization in the background on the running loop."""
        return asyncio.create_task(self.initialize())

    async def initialize(self) -> None:
        """Load the knowledge base from cache or build it from the documents.

        Safe to call repeatedly; concurrent callers wait for the first one.
        """
        if self.is_initialized:
            return

        async with self._init_lock:
            if self.is_initialized:
                return
            self._lifecycle = EngineState.INITIALIZING
            try:
                await self._build(use_cache=True)
            except BaseException:
                self._lifecycle = EngineState.UNINITIALIZED
                raise
            self._lifecycle = EngineState.READY

    async def reinitialize(self) -> None:
        """Discard every cache and rebuild from the documents.

        Raises:
            EngineStateError: If an (re)initialization is already running
        """
        if self._lifecycle in (EngineState.INITIALIZING, EngineState.REINITIALIZING):
            raise EngineStateError(f"Cannot reinitialize while {self._lifecycle.value}")

        async with self._init_lock:
            self._lifecycle = EngineState.REINITIALIZING
            logger.warning("rag_engine_reinitializing")
            try:
                await self.store.clear()
                self.processor.clear_cache()
                if self.store.cache is not None:
                    self.store.cache.clear_cache()

                self._lifecycle = EngineState.INITIALIZING
                await self._build(use_cache=False)
            except BaseException:
                self._lifecycle = EngineState.UNINITIALIZED
                raise
            self._lifecycle = EngineState.READY

    async def _build(self, use_cache: bool) -> None:
        cache = self.store.cache
        if use_cache and cache is not None and cache.cache_exists():
            units = cache.load_from_file()
            if units:
                await self.store.load(units)
                logger.info("rag_engine_initialized_from_cache", unit_count=len(units))
                return

        units = await asyncio.to_thread(self.processor.process_all)
        await self.store.index(units)
        logger.info(
            "rag_engine_initialized_from_documents",
            unit_count=len(units),
            stats=self.processor.stats,
        )

    async def _prepare(self, question: str, code_snippet: Optional[str]) -> PreparedPrompt:
        if not self.is_initialized:
            await self.initialize()

        results = await self.store.search(question, self.top_k)
        relevant = [r for r in results if r.similarity > self.grounding_threshold]

        groups = group_by_source(relevant)
        sources = build_citations(groups)
        context = build_context(groups, self.max_context_chars)

        has_code = bool(code_snippet and code_snippet.strip())
        variant = select_variant(grounded=bool(relevant), has_code=has_code)
        prompt = self.prompts.render(
            variant,
            context=context,
            question=question,
            code=code_snippet or "",
        )

        if relevant:
            logger.info(
                "relevant_units_found",
                count=len(relevant),
                sources=len(groups),
                variant=variant,
            )
        else:
            logger.info(
                "no_relevant_units_general_answer",
                threshold=self.grounding_threshold,
                variant=variant,
            )
        return PreparedPrompt(prompt=prompt, variant=variant, sources=sources)

    async def answer_question(
        self, question: str, code_snippet: Optional[str] = None
    ) -> RAGAnswer:
        """Answer a question and return the full text at once.

        Args:
            question: The user's question
            code_snippet: Optional code the question is about

        Returns:
            RAGAnswer with the generated text followed by its references
        """
        self._active_answers += 1
        try:
            prepared = await self._prepare(question, code_snippet)
            try:
                text = await self.generator.generate(prepared.prompt)
            except Exception as e:
                logger.error(
                    "generation_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                text = format_error(e)
            text += format_references(prepared.sources)
            return RAGAnswer(text=text, sources=prepared.sources)
        finally:
            self._active_answers -= 1

    async def answer_stream(
        self, question: str, code_snippet: Optional[str] = None
    ) -> TokenStream:
        """Retrieve context and return a stream of answer tokens.

        The stream ends with the reference footer. Cancel it (or leave its
        ``async with`` block) to abort generation. The engine reports
        ``ANSWERING`` until the stream is closed, cancelled or garbage
        collected.

        Args:
            question: The user's question
            code_snippet: Optional code the question is about

        Returns:
            TokenStream carrying the answer tokens and the source list
        """
        self._active_answers += 1
        try:
            prepared = await self._prepare(question, code_snippet)
        except BaseException:
            self._active_answers -= 1
            raise

        def on_close() -> None:
            self._active_answers -= 1

        return TokenStream(self._generate_tokens(prepared), prepared.sources, on_close)

    async def _generate_tokens(self, prepared: PreparedPrompt) -> AsyncGenerator[str, None]:
        upstream = self.generator.stream(prepared.prompt)
        try:
            async for token in upstream:
                if token:
                    yield token
        except Exception as e:
            logger.error(
                "streaming_generation_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            yield format_error(e)
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

        yield format_references(prepared.sources)

    async def relevance_score(self, question: str) -> float:
        """Similarity of the best matching unit (0.0 before initialization)."""
        if not self.is_initialized:
            return 0.0
        results = await self.store.search(question, 1)
        return results[0].similarity if results else 0.0

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the engine and its store."""
        return {
            "state": self.state.value,
            "active_answers": self._active_answers,
            "processor": dict(self.processor.stats),
            "store": self.store.get_stats(),
        }
