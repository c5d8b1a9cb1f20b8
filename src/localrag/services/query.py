"""Query orchestration combining retrieval, generation and cost metering."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Tuple
from uuid import uuid4

from localrag.costs import UsageSink
from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import ChatMessage, MessageRole, OperationKind, SearchResult, UsageMetadata, UsageRecord
from localrag.retrieval import SearchEngine, SearchOptions
from localrag.services.generation import (
    GenerationError,
    GenerationOptions,
    TemplateGenerator,
    TextGenerationProvider,
)
from localrag.storage import LocalStore, QuotaExceededError

EMPTY_QUESTION_GUIDANCE = "Please enter a question about your documents."
NO_DOCUMENTS_GUIDANCE = (
    "There are no documents in this project yet. Upload at least one document, "
    "then ask your question again."
)
NO_CONTEXT_ANSWER = (
    "I don't have enough information in your documents to answer that question. "
    "Try rephrasing it or uploading more relevant documents."
)
GENERATION_FAILED_ANSWER = "Sorry, I couldn't generate an answer because the language model is unavailable ({reason})."


class QueryState(str, Enum):
    RECEIVED = "received"
    SEARCHING = "searching"
    NO_CONTEXT = "no_context"
    CONTEXT_FOUND = "context_found"
    GENERATING = "generating"
    ANSWERED = "answered"
    GENERATION_FAILED = "generation_failed"


@dataclass(frozen=True)
class QueryOutcome:
    """Final state of one question.

    ``state`` is ``RECEIVED`` when the question short-circuited to guidance.
    """

    state: QueryState
    answer: str
    sources: Tuple[SearchResult, ...] = ()
    usage: UsageMetadata | None = None
    error: str | None = None


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    max_context_chars: int = 4000
    citation_prefix: str = "["
    citation_suffix: str = "]"

    def __post_init__(self) -> None:
        if self.max_context_chars <= 0:
            raise ValueError("max_context_chars must be positive")


class PromptBuilder:
    """Builds bounded context blocks and prompts for the generation provider."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    @property
    def config(self) -> PromptBuilderConfig:
        return self._config

    def select_context(self, results: Sequence[SearchResult]) -> Tuple[List[SearchResult], str]:
        """Fit results into ``max_context_chars`` in score order.

        Lower-scored results are dropped first. A top result that alone is too
        long is truncated.
        """

        limit = self._config.max_context_chars
        selected: List[SearchResult] = []
        entries: List[str] = []
        for index, result in enumerate(results, start=1):
            entry = self._entry(index, result.chunk.text, result.document_name)
            if len("\n\n".join([*entries, entry])) <= limit:
                entries.append(entry)
                selected.append(result)
                continue
            if not entries:
                overhead = len(self._entry(index, "", result.document_name))
                room = max(limit - overhead, 0)
                entries.append(self._entry(index, result.chunk.text[:room], result.document_name)[:limit])
                selected.append(result)
            break
        return selected, "\n\n".join(entries)

    def build_prompt(self, question: str, context: str) -> str:
        return f"Context:\n{context}\n\nQuestion: {question}\nAnswer with citations in the form [index]."

    def _entry(self, index: int, text: str, document_name: str) -> str:
        prefix = f"{self._config.citation_prefix}{index}{self._config.citation_suffix}"
        return f"{prefix} {text}\nSource: {document_name}"


class _PendingUsage:
    """Usage held back until the query's outcome is known."""

    def __init__(self) -> None:
        self.entries: List[Tuple[OperationKind, int, str | None]] = []

    def record_usage(self, kind: OperationKind, quantity: int, *, model_id: str | None = None) -> None:
        self.entries.append((kind, quantity, model_id))

    def price(self, sink: UsageSink | None) -> List[UsageRecord]:
        if sink is None:
            return []
        return [sink.price(kind, quantity, model_id=model_id) for kind, quantity, model_id in self.entries]


class QueryOrchestrator:
    """Answers questions for one project from its ingested documents.

    Chat messages and usage records are written together, in one store batch,
    once a question reaches a final state. A cancelled question leaves no
    trace and a failed generation records no usage at all. When that batch
    does not fit in the store the answer is still returned, with ``error``
    set and nothing written or billed.
    """

    def __init__(
        self,
        project_id: str,
        store: LocalStore,
        search_engine: SearchEngine,
        generator: TextGenerationProvider | None = None,
        *,
        usage_sink: UsageSink | None = None,
        search_options: SearchOptions | None = None,
        generation_options: GenerationOptions | None = None,
        prompt_builder: PromptBuilder | None = None,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._project_id = project_id
        self._store = store
        self._search = search_engine
        self._generator = generator or TemplateGenerator()
        self._usage_sink = usage_sink
        self._search_options = search_options or SearchOptions()
        self._generation_options = generation_options or GenerationOptions()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._metrics = metrics
        self._logger = get_logger("query")

    @property
    def search_options(self) -> SearchOptions:
        return self._search_options

    async def ask(self, question: str, *, search_options: SearchOptions | None = None) -> QueryOutcome:
        text = question.strip()
        if not text:
            return QueryOutcome(state=QueryState.RECEIVED, answer=EMPTY_QUESTION_GUIDANCE)

        user_message = self._message(MessageRole.USER, text)
        if self._store.usage(self._project_id).document_count == 0:
            error = self._persist([user_message, self._message(MessageRole.ASSISTANT, NO_DOCUMENTS_GUIDANCE)])
            self._logger.info("query.no_documents", project_id=self._project_id)
            return QueryOutcome(state=QueryState.RECEIVED, answer=NO_DOCUMENTS_GUIDANCE, error=error)

        pending = _PendingUsage()
        options = search_options or self._search_options
        results = await self._search.search(self._project_id, text, options, usage_sink=pending)
        if not results:
            error = self._persist(
                [user_message, self._message(MessageRole.ASSISTANT, NO_CONTEXT_ANSWER)],
                pending.price(self._usage_sink),
            )
            self._logger.info("query.no_context", project_id=self._project_id, algorithm=options.algorithm.value)
            return QueryOutcome(state=QueryState.NO_CONTEXT, answer=NO_CONTEXT_ANSWER, error=error)

        sources, context = self._prompt_builder.select_context(results)
        prompt = self._prompt_builder.build_prompt(text, context)
        generation_start = time.perf_counter()
        try:
            generation = await self._generator.generate(prompt, self._generation_options)
        except GenerationError as exc:
            answer = GENERATION_FAILED_ANSWER.format(reason=exc)
            self._persist([user_message, self._message(MessageRole.ASSISTANT, answer, is_error=True)])
            self._logger.warning(
                "generation.failed",
                project_id=self._project_id,
                provider_id=exc.provider_id,
                error=str(exc),
            )
            return QueryOutcome(
                state=QueryState.GENERATION_FAILED,
                answer=answer,
                sources=tuple(sources),
                error=str(exc),
            )
        generation_duration = time.perf_counter() - generation_start
        if self._metrics is not None:
            self._metrics.observe_generation(generation_duration)

        pending.record_usage(OperationKind.GENERATION, generation.tokens_used, model_id=generation.model_id)
        records = pending.price(self._usage_sink)
        usage = UsageMetadata(
            tokens_used=generation.tokens_used,
            cost=records[-1].cost if records else 0.0,
            latency_ms=generation.latency_ms,
            model_id=generation.model_id,
        )
        reply = self._message(MessageRole.ASSISTANT, generation.text, sources=tuple(sources), usage=usage)
        error = self._persist([user_message, reply], records)
        self._logger.info(
            "generation.complete",
            project_id=self._project_id,
            model_id=generation.model_id,
            tokens_used=generation.tokens_used,
            citation_count=len(sources),
            duration_seconds=generation_duration,
        )
        return QueryOutcome(
            state=QueryState.ANSWERED,
            answer=generation.text,
            sources=tuple(sources),
            usage=usage,
            error=error,
        )

    def _persist(self, messages: Sequence[ChatMessage], records: Sequence[UsageRecord] = ()) -> str | None:
        """Store messages and usage in one batch; return the quota error if it did not fit."""

        try:
            self._store.put_many([*messages, *records])
        except QuotaExceededError as exc:
            self._logger.warning("query.not_persisted", project_id=self._project_id, error=str(exc))
            return str(exc)
        if self._usage_sink is not None:
            self._usage_sink.committed(records)
        return None

    def _message(
        self,
        role: MessageRole,
        content: str,
        *,
        sources: Tuple[SearchResult, ...] = (),
        usage: UsageMetadata | None = None,
        is_error: bool = False,
    ) -> ChatMessage:
        return ChatMessage(
            message_id=uuid4().hex,
            project_id=self._project_id,
            role=role,
            content=content,
            sources=sources,
            usage=usage,
            is_error=is_error,
        )
