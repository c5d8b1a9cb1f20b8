"""Service layer orchestrations for localrag."""

from .generation import (
    GenerationConfig,
    GenerationError,
    GenerationOptions,
    GenerationProviderRegistry,
    GenerationResult,
    OpenAICompatibleGenerator,
    TemplateGenerator,
    TextGenerationProvider,
    TransformersGenerator,
)
from .query import PromptBuilder, PromptBuilderConfig, QueryOrchestrator, QueryOutcome, QueryState
from .session import ProjectSession, build_embedder, build_generator, build_session, build_store

__all__ = [
    "GenerationConfig",
    "GenerationError",
    "GenerationOptions",
    "GenerationProviderRegistry",
    "GenerationResult",
    "OpenAICompatibleGenerator",
    "ProjectSession",
    "PromptBuilder",
    "PromptBuilderConfig",
    "QueryOrchestrator",
    "QueryOutcome",
    "QueryState",
    "TemplateGenerator",
    "TextGenerationProvider",
    "TransformersGenerator",
    "build_embedder",
    "build_generator",
    "build_session",
    "build_store",
]
