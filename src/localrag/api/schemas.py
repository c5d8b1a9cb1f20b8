"""Pydantic models for the localrag API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class TextIngestionRequest(BaseModel):
    """Payload for ingesting one raw text document."""

    name: str = Field(..., min_length=1, description="Display name of the document")
    text: str = Field(..., description="Raw document text")
    content_type: str = Field(default="text/plain")


class DocumentSummary(BaseModel):
    document_id: str = Field(..., description="Stable identifier derived from project, name and content")
    name: str
    content_type: str
    size_bytes: int = Field(..., ge=0)
    chunk_count: int = Field(..., ge=0, description="Number of chunks created for the document")
    embedding_provider: str
    created_at: datetime


class DocumentIngestionResponse(BaseModel):
    project_id: str
    document: DocumentSummary
    created: bool = Field(..., description="False when an identical document was already ingested")


class DocumentListResponse(BaseModel):
    project_id: str
    documents: List[DocumentSummary]


class JobResponse(BaseModel):
    job_id: str
    project_id: str
    document_name: str
    status: Literal["pending", "processing", "completed", "failed"]
    error: Optional[str] = None
    document: Optional[DocumentSummary] = None


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    algorithm: Optional[Literal["keyword", "semantic", "hybrid"]] = None
    top_k: Optional[int] = Field(default=None, ge=1, le=100)
    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SearchResultModel(BaseModel):
    chunk_id: str
    document_id: str
    document_name: str
    chunk_index: int
    score: float
    algorithm: str
    snippet: str
    text: str


class SearchResponse(BaseModel):
    project_id: str
    results: List[SearchResultModel]


class QueryRequest(BaseModel):
    question: str = Field(..., description="End-user question to answer")
    algorithm: Optional[Literal["keyword", "semantic", "hybrid"]] = None
    top_k: Optional[int] = Field(default=None, ge=1, le=100)


class UsageModel(BaseModel):
    tokens_used: int
    cost: float
    latency_ms: float
    model_id: str


class QueryResponse(BaseModel):
    state: str
    answer: str
    sources: List[SearchResultModel]
    usage: Optional[UsageModel] = None
    error: Optional[str] = None


class ChatMessageModel(BaseModel):
    message_id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime
    sources: List[SearchResultModel] = Field(default_factory=list)
    usage: Optional[UsageModel] = None
    is_error: bool = False


class ChatHistoryResponse(BaseModel):
    project_id: str
    messages: List[ChatMessageModel]


class RemovedResponse(BaseModel):
    removed: int


class StorageUsageResponse(BaseModel):
    document_count: int
    chunk_count: int
    embedding_count: int
    chat_message_count: int
    usage_record_count: int
    bytes_used: int
    bytes_available: int
    capacity_bytes: int


class EvictionRequest(BaseModel):
    bytes_needed: int = Field(..., ge=0)


class EvictionResponse(BaseModel):
    evicted_document_ids: List[str]
    storage: StorageUsageResponse


class BudgetUpdateRequest(BaseModel):
    monthly_limit: float = Field(..., ge=0.0)


class BudgetAlertModel(BaseModel):
    threshold: float
    utilization: float
    message: str
    period: str


class BudgetStatusResponse(BaseModel):
    within_budget: bool
    current_spend: float
    monthly_limit: float
    utilization: float
    projected_monthly_cost: float
    alert_thresholds: List[float]
    alerts: List[BudgetAlertModel]


class CostSummaryResponse(BaseModel):
    current_spend: float
    projected_monthly_cost: float
    utilization: float
    record_count: int
    breakdown: Dict[str, float]
