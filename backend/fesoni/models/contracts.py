"""Fesoni contract models shared by activities, the session workflow and the API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, model_validator

TaskStatus = Literal["processing", "completed", "failed"]
PriceTier = Literal["budget", "mid", "premium"]
DownloadErrorKind = Literal["expired", "not_ready", "auth", "generic"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === Style ===


class StyleAttributes(BaseModel):
    """Structured style attributes for one user turn. Immutable once produced."""

    model_config = {"frozen": True}

    aesthetics: list[str] = []
    colors: list[str] = []
    textures: list[str] = []
    silhouettes: list[str] = []
    mood: list[str] = []
    keywords: list[str] = []
    product_types: list[str] = []
    lifestyle: str = ""
    budget: float | None = Field(default=None, ge=0)


class StyleAnalysis(BaseModel):
    attributes: StyleAttributes = StyleAttributes()
    follow_up_questions: list[str] = []
    recommended_categories: list[str] = []
    overall_style: str = ""
    description: str = ""


# === Catalog ===


class Product(BaseModel):
    product_id: str
    title: str
    url: str = ""
    image: str = ""
    price: float = Field(ge=0, default=0.0)
    retail_price: float | None = None
    rating: float = Field(ge=0, le=5, default=0.0)
    reviews: int = Field(ge=0, default=0)
    prime: bool = False
    delivery_message: str = ""
    category: str | None = None
    brand: str | None = None


class ScoredProduct(Product):
    similarity_score: float = Field(ge=0, le=1)
    price_tier: PriceTier
    style_match_reasons: list[str] = []
    alternative_products: list[Product] = []


class BudgetAnalysis(BaseModel):
    within_budget: int
    over_budget: int
    average_price: float
    recommended_budget: float


class SearchResult(BaseModel):
    products: list[ScoredProduct] = []
    total_found: int = 0
    search_strategy: str = ""
    budget_analysis: BudgetAnalysis | None = None


class BudgetAllocation(BaseModel):
    category: str
    amount: float
    percentage: float
    recommendation: Literal["splurge", "save", "balanced"]


class BudgetBreakdown(BaseModel):
    total_cost: float
    original_total: float
    savings: float
    allocation: list[BudgetAllocation] = []


# === Documents ===


class ProcessingTask(BaseModel):
    """A remote processing job. Only the task poller changes its status."""

    task_id: str
    type: str
    status: TaskStatus = "processing"
    download_url: str | None = None

    @model_validator(mode="after")
    def _download_url_iff_completed(self) -> ProcessingTask:
        if (self.status == "completed") != (self.download_url is not None):
            raise ValueError("download_url must be set exactly when status is 'completed'")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status != "processing"

    def resolve(self, status: TaskStatus, download_url: str | None = None) -> bool:
        """Apply a polled status. Returns True if the task changed.

        Terminal states are final: resolving a completed or failed task
        raises ValueError.
        """
        if self.is_terminal:
            raise ValueError(f"task {self.task_id} is already {self.status}")
        if status == "processing":
            return False
        if status == "completed":
            if not download_url:
                raise ValueError("a completed task needs a download_url")
            self.download_url = download_url
        self.status = status
        return True


class SubmittedTask(BaseModel):
    type: str
    task_id: str


class DocumentBundle(BaseModel):
    main_document: str  # base64 PDF
    document_id: str | None = None
    processed_versions: list[ProcessingTask] = []


class BatchSummary(BaseModel):
    completed: int = 0
    failed: int = 0
    pending: int = 0
    timed_out: bool = False

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.pending


class PortfolioPreferences(BaseModel):
    aesthetics: list[str]
    product_types: list[str] = []
    budget: str | None = None
    lifestyle: str = "casual"
    colors: list[str] = []
    personal_style: str | None = None


class PortfolioProduct(BaseModel):
    product_id: str
    title: str
    url: str = ""
    image: str = ""
    price: float = 0.0
    category: str | None = None


class PortfolioMetadata(BaseModel):
    user_name: str | None = None
    created_date: datetime = Field(default_factory=_utcnow)
    season: str | None = None
    occasion: str | None = None


class StylePortfolioData(BaseModel):
    preferences: PortfolioPreferences
    products: list[PortfolioProduct] = []
    metadata: PortfolioMetadata = Field(default_factory=PortfolioMetadata)


class StylePortfolio(BaseModel):
    """Result of one style-guide submission: the main PDF plus submitted jobs."""

    main_document: str
    document_id: str | None = None
    processed_versions: list[SubmittedTask] = []


# === Conversation ===


class ChatMessage(BaseModel):
    id: str
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    products: list[ScoredProduct] | None = None
    style_documents: DocumentBundle | None = None


class SessionState(BaseModel):
    session_id: str
    messages: list[ChatMessage] = []
    is_generating_documents: bool = False
    document_error: str | None = None


class TurnResult(BaseModel):
    analysis: StyleAnalysis
    messages: list[ChatMessage]


# === API Request/Response Models ===


class CreateSessionResponse(BaseModel):
    session_id: str


class MessageRequest(BaseModel):
    message: str = Field(min_length=1)


class DocumentActionRequest(BaseModel):
    action: Literal["social-images", "split", "merge"]
    split_options: list[Literal["tops", "bottoms", "accessories", "outfits"]] = []
    merge_options: list[
        Literal["trend-report", "care-guide", "size-fit", "master-collection"]
    ] = []


class BudgetRequest(BaseModel):
    target_budget: float | None = Field(default=None, gt=0)


class SwapRequest(BaseModel):
    product_id: str
    alternative_index: int = Field(ge=0)


class BudgetResponse(BaseModel):
    breakdown: BudgetBreakdown
    over_budget: bool = False
    optimized_products: list[ScoredProduct] | None = None


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool
    detail: str | None = None
