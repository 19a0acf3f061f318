"""One chat session: turns, style-guide bundles and their background pollers.

A turn runs analysis -> catalog search -> assistant reply, then (when the
turn found products for a known aesthetic) generates the style guide. The
bundle is attached to the assistant message that showed the products and
its processing tasks are polled in the background. When a batch finishes
the session appends a completion or timeout message.

Sessions are in-memory only and owned by the API process.
"""

from __future__ import annotations

import asyncio
import base64
import uuid
from typing import Literal

import anthropic
import httpx
import structlog

from fesoni.activities.budget import budget_breakdown, optimize_for_budget, swap_product
from fesoni.activities.product_search import fill_product_details, search_by_style
from fesoni.activities.style_analysis import StyleAnalyzer
from fesoni.activities.style_guide import (
    TemplateLoadError,
    build_portfolio_data,
    create_style_portfolio,
    submit_followup_tasks,
)
from fesoni.activities.task_polling import TaskPoller
from fesoni.config import settings
from fesoni.models.contracts import (
    BatchSummary,
    BudgetResponse,
    ChatMessage,
    DocumentBundle,
    ProcessingTask,
    ScoredProduct,
    SessionState,
    StyleAnalysis,
    StylePortfolioData,
    TurnResult,
)
from fesoni.utils.catalog import CatalogClient
from fesoni.utils.document_service import DocumentServiceClient, DocumentServiceError, DownloadError
from fesoni.utils.image import fetch_image_bytes, to_base64_jpeg

log = structlog.get_logger("style_session")

APOLOGY_MESSAGE = (
    "I apologize, but I encountered an issue processing your request. "
    "Please check your API configuration and try again."
)
IMAGE_USER_PLACEHOLDER = "[Inspiration image]"

ALL_READY_MESSAGE = (
    "All your style documents are now ready! You can download the compressed version "
    "for easy sharing, grab the social media images to post your style inspiration, or "
    "use the quick reference pages for fast outfit planning."
)
NONE_READY_MESSAGE = (
    "Your main style document is ready! Some additional processing tasks encountered "
    "issues, but you can still download and use your personalized style guide."
)
TIMEOUT_MESSAGE = (
    "Some document processing tasks are taking longer than expected. Your main style "
    "guide is ready, and completed versions are available for download. You can continue "
    "with your styling or ask me any questions!"
)
TEMPLATE_ERROR_MESSAGE = (
    "I found perfect products for your style, but I'm having trouble accessing the "
    "document template. This is likely a temporary technical issue.\n\n"
    "**What you can do:**\n"
    "• The curated products above are still perfectly matched to your preferences\n"
    "• Try asking again in a moment\n\n"
    "**Your products are ready** - I can keep helping you with more recommendations "
    "while this gets fixed!"
)
GENERATION_ERROR_MESSAGE = (
    "I've curated amazing products for your style! However, I'm experiencing a temporary "
    "issue generating your personalized style guide.\n\n"
    "**Don't worry** - your product recommendations above are carefully selected and "
    "ready to view. I can also help you with:\n"
    "• More product suggestions\n"
    "• Styling advice for specific pieces\n"
    "• Questions about the items I found"
)
GENERIC_DOCUMENT_ERROR_MESSAGE = (
    "Great news - I found fantastic products that match your style perfectly! While I "
    "work on resolving a temporary issue with document generation, you can:\n\n"
    "• Browse the curated products above\n"
    "• Ask me about specific items\n"
    "• Request more recommendations\n\n"
    "What would you like to explore next from your personalized selection?"
)


class SessionLookupError(LookupError):
    """A message or task id does not belong to this session."""


class MissingDocumentError(Exception):
    """A follow-up action needs a bundle with an uploaded document."""


def completion_message(summary: BatchSummary) -> str:
    if summary.timed_out:
        return TIMEOUT_MESSAGE
    if summary.completed and not summary.failed:
        return ALL_READY_MESSAGE
    if summary.completed:
        return (
            f"{summary.completed} of your style documents are ready for download! "
            f"{summary.failed} processing task(s) encountered issues, but your main "
            "document and other versions are available."
        )
    return NONE_READY_MESSAGE


def bundle_message(aesthetics: list[str], bundle: DocumentBundle, product_count: int) -> str:
    lines = [
        "Perfect! I've created your personalized style documentation based on your "
        f"{' + '.join(aesthetics)} aesthetic. Here's what I've generated:",
        "",
        "**Complete Style Guide** - Your comprehensive style portfolio (ready now)",
    ]
    labels = {
        "compressed": "**Compressed Version** - Smaller file for easy sharing",
        "social-images": "**Social Media Images** - Perfect for sharing your style inspiration",
        "quick-reference": "**Quick Reference Pages** - Key pages for fast outfit decisions",
    }
    for task in bundle.processed_versions:
        lines.append(f"{labels.get(task.type, task.type)} (processing...)")
    lines += [
        "",
        f"Your main style guide includes {product_count} curated products, personalized "
        "styling tips, and a custom color palette. Download it now to start building "
        "your perfect wardrobe!",
    ]
    return "\n".join(lines)


def _new_id() -> str:
    return uuid.uuid4().hex


class StyleSession:
    def __init__(
        self,
        session_id: str,
        *,
        analyzer: StyleAnalyzer,
        catalog: CatalogClient,
        documents: DocumentServiceClient,
        http_client: httpx.AsyncClient,
        poller: TaskPoller | None = None,
    ) -> None:
        self.session_id = session_id
        self.messages: list[ChatMessage] = []
        self.is_generating_documents = False
        self.document_error: str | None = None
        self._analyzer = analyzer
        self._catalog = catalog
        self._documents = documents
        self._http = http_client
        self._poller = poller or TaskPoller(documents.check_task_status)
        self._analyses: dict[str, StyleAnalysis] = {}
        self._portfolios: dict[str, StylePortfolioData] = {}

    # --- Lookup ---

    def state(self) -> SessionState:
        return SessionState(
            session_id=self.session_id,
            messages=self.messages,
            is_generating_documents=self.is_generating_documents,
            document_error=self.document_error,
        )

    def get_message(self, message_id: str) -> ChatMessage:
        for message in self.messages:
            if message.id == message_id:
                return message
        raise SessionLookupError(f"Message {message_id} not found")

    def get_task(self, task_id: str) -> ProcessingTask:
        for message in self.messages:
            if message.style_documents is None:
                continue
            for task in message.style_documents.processed_versions:
                if task.task_id == task_id:
                    return task
        raise SessionLookupError(f"Task {task_id} not found")

    def _append(self, role: Literal["user", "assistant"], content: str, **extra) -> ChatMessage:
        message = ChatMessage(id=_new_id(), role=role, content=content, **extra)
        self.messages.append(message)
        return message

    # --- Turns ---

    async def send_message(self, text: str) -> TurnResult:
        history = list(self.messages)
        start = len(self.messages)
        self._append("user", text)
        self.document_error = None

        analysis = await self._analyzer.analyze_text(text)
        await self._respond(analysis, history, text)
        return TurnResult(analysis=analysis, messages=self.messages[start:])

    async def send_image(self, image_data: bytes) -> TurnResult:
        """Analyze an uploaded image. Raises InvalidImageError for unusable bytes."""
        encoded = await asyncio.to_thread(to_base64_jpeg, image_data)
        history = list(self.messages)
        start = len(self.messages)
        self._append("user", IMAGE_USER_PLACEHOLDER)
        self.document_error = None

        analysis = await self._analyzer.analyze_image(encoded)
        prompt = (
            "I uploaded an inspiration image. Its style reads as "
            f"{analysis.overall_style or 'unclear'}: {analysis.description}"
        )
        await self._respond(analysis, history, prompt)
        return TurnResult(analysis=analysis, messages=self.messages[start:])

    async def send_image_url(self, url: str) -> TurnResult:
        """Download an inspiration image by URL, then run an image turn."""
        image_data = await fetch_image_bytes(self._http, url)
        return await self.send_image(image_data)

    async def _respond(
        self, analysis: StyleAnalysis, history: list[ChatMessage], prompt: str
    ) -> None:
        attributes = analysis.attributes
        result = await search_by_style(
            self._catalog,
            attributes,
            settings.catalog_max_results,
            with_alternatives=settings.search_find_alternatives,
        )
        products = result.products

        try:
            reply = await self._analyzer.reply(analysis, len(products), history, prompt)
        except anthropic.APIError as exc:
            log.warning("assistant_reply_failed", session_id=self.session_id, error=str(exc)[:200])
            reply = APOLOGY_MESSAGE

        message = self._append("assistant", reply, products=products or None)
        self._analyses[message.id] = analysis
        log.info(
            "turn_complete",
            session_id=self.session_id,
            products=len(products),
            aesthetics=len(attributes.aesthetics),
        )

        if products and attributes.aesthetics:
            await self.generate_documents(message, analysis, products)

    # --- Style guide ---

    async def generate_documents(
        self,
        owner: ChatMessage,
        analysis: StyleAnalysis,
        products: list[ScoredProduct],
    ) -> DocumentBundle | None:
        """Generate the style guide for `owner` and start polling its jobs.

        Generation failures become an assistant message and `document_error`;
        they never propagate.
        """
        data = build_portfolio_data(analysis, products)
        self.is_generating_documents = True
        self.document_error = None
        try:
            portfolio = await create_style_portfolio(self._documents, data)
        except TemplateLoadError as exc:
            self._document_failed(str(exc), TEMPLATE_ERROR_MESSAGE)
            return None
        except DocumentServiceError as exc:
            content = (
                GENERATION_ERROR_MESSAGE
                if exc.status_code is not None
                else GENERIC_DOCUMENT_ERROR_MESSAGE
            )
            self._document_failed(str(exc), content)
            return None
        except Exception as exc:
            log.exception("style_guide_unexpected_error", session_id=self.session_id)
            self._document_failed(
                f"{type(exc).__name__}: {exc}", GENERIC_DOCUMENT_ERROR_MESSAGE
            )
            return None
        finally:
            self.is_generating_documents = False

        bundle = DocumentBundle(
            main_document=portfolio.main_document,
            document_id=portfolio.document_id,
            processed_versions=[
                ProcessingTask(task_id=t.task_id, type=t.type)
                for t in portfolio.processed_versions
            ],
        )
        owner.style_documents = bundle
        self._portfolios[owner.id] = data
        self._append(
            "assistant",
            bundle_message(data.preferences.aesthetics, bundle, len(data.products)),
        )
        self._start_batch(owner.id, bundle)
        return bundle

    def _document_failed(self, error: str, content: str) -> None:
        log.warning("style_guide_failed", session_id=self.session_id, error=error[:200])
        self.document_error = error
        self._append("assistant", content)

    def _start_batch(self, owner_id: str, bundle: DocumentBundle) -> None:
        active = [t for t in bundle.processed_versions if not t.is_terminal]
        if not active:
            return

        def on_finish(summary: BatchSummary) -> None:
            self._append("assistant", completion_message(summary))

        self._poller.start(owner_id, active, on_finish=on_finish)

    async def run_document_action(
        self,
        message_id: str,
        action: str,
        split_options: list[str] | None = None,
        merge_options: list[str] | None = None,
    ) -> DocumentBundle:
        """Submit follow-up jobs for a message's bundle and restart its batch."""
        message = self.get_message(message_id)
        bundle = message.style_documents
        if bundle is None or not bundle.document_id:
            raise MissingDocumentError("This message has no uploaded style guide")
        portfolio = self._portfolios.get(message.id)
        if action == "merge" and portfolio is None:
            raise MissingDocumentError("This style guide has no data to merge with")

        submitted = await submit_followup_tasks(
            self._documents,
            bundle.document_id,
            action,
            split_options,
            merge_options=merge_options,
            portfolio=portfolio,
        )
        bundle.processed_versions.extend(
            ProcessingTask(task_id=t.task_id, type=t.type) for t in submitted
        )
        if submitted:
            self._start_batch(message.id, bundle)
        return bundle

    def main_document(self, message_id: str) -> bytes:
        bundle = self.get_message(message_id).style_documents
        if bundle is None:
            raise SessionLookupError(f"Message {message_id} has no style guide")
        return base64.b64decode(bundle.main_document)

    async def download_task(self, task_id: str) -> bytes:
        """Fetch a processed version. Raises DownloadError if it is not downloadable."""
        task = self.get_task(task_id)
        if task.status == "processing":
            raise DownloadError(
                "not_ready", "Document is still processing. Please try again in a moment."
            )
        if task.download_url is None:
            raise DownloadError("generic", f"Processing task {task_id} failed")
        return await self._documents.download(task.download_url)

    # --- Budget ---

    def _products(self, message_id: str) -> list[ScoredProduct]:
        message = self.get_message(message_id)
        if not message.products:
            raise SessionLookupError(f"Message {message_id} has no products")
        return message.products

    def budget(self, message_id: str, target: float | None = None) -> BudgetResponse:
        """Breakdown for a message's products, fitted to `target` when over it.

        Without an explicit target the budget from the turn's analysis is used.
        """
        products = self._products(message_id)
        if target is None and message_id in self._analyses:
            target = self._analyses[message_id].attributes.budget

        breakdown = budget_breakdown(products)
        if not target or breakdown.total_cost <= target:
            return BudgetResponse(breakdown=breakdown)

        optimized = optimize_for_budget(products, target)
        if optimized:
            self.get_message(message_id).products = optimized
        else:
            log.info("budget_nothing_fits", session_id=self.session_id, target=target)
        return BudgetResponse(
            breakdown=budget_breakdown(optimized),
            over_budget=True,
            optimized_products=optimized,
        )

    async def swap(
        self, message_id: str, product_id: str, alternative_index: int
    ) -> list[ScoredProduct]:
        """Swap in an alternative and fill its catalog details."""
        products = self._products(message_id)
        swapped = swap_product(products, product_id, alternative_index)
        position = next(i for i, p in enumerate(products) if p.product_id == product_id)
        swapped[position] = await fill_product_details(self._catalog, swapped[position])
        self.get_message(message_id).products = swapped
        return swapped

    # --- Lifecycle ---

    async def close(self) -> None:
        """Abandon every local polling batch. Nothing is cancelled remotely."""
        await self._poller.cancel_all()
