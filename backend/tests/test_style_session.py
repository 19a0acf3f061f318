"""Tests for the chat session: turns, style-guide generation, polling messages."""

import asyncio
import base64
import io
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest
from PIL import Image

from fesoni.activities.style_guide import TemplateLoadError
from fesoni.activities.task_polling import TaskPoller
from fesoni.config import settings
from fesoni.models.contracts import (
    BatchSummary,
    DocumentBundle,
    ProcessingTask,
    Product,
    StyleAnalysis,
    StyleAttributes,
    StylePortfolio,
    SubmittedTask,
)
from fesoni.utils.document_service import (
    DocumentServiceClient,
    DocumentServiceError,
    DownloadError,
    TaskStatusResult,
)
from fesoni.workflows.style_session import (
    ALL_READY_MESSAGE,
    APOLOGY_MESSAGE,
    GENERATION_ERROR_MESSAGE,
    GENERIC_DOCUMENT_ERROR_MESSAGE,
    NONE_READY_MESSAGE,
    TEMPLATE_ERROR_MESSAGE,
    TIMEOUT_MESSAGE,
    MissingDocumentError,
    SessionLookupError,
    StyleSession,
    completion_message,
)

_PDF_B64 = base64.b64encode(b"%PDF").decode()

_ANALYSIS = StyleAnalysis(
    attributes=StyleAttributes(aesthetics=["minimalist"], keywords=["tote bag"], budget=50),
    recommended_categories=["handbags"],
)


def _png() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (64, 64), "navy").save(buf, format="PNG")
    return buf.getvalue()


def _portfolio(*task_types: str) -> StylePortfolio:
    return StylePortfolio(
        main_document=_PDF_B64,
        document_id="doc-1",
        processed_versions=[SubmittedTask(type=t, task_id=f"task-{t}") for t in task_types],
    )


def _session(
    *,
    analysis: StyleAnalysis = _ANALYSIS,
    products: list[Product] | None = None,
    check_status=None,
) -> StyleSession:
    analyzer = MagicMock()
    analyzer.analyze_text = AsyncMock(return_value=analysis)
    analyzer.analyze_image = AsyncMock(return_value=analysis)
    analyzer.reply = AsyncMock(return_value="Here are some minimalist totes.")

    catalog = MagicMock()
    if products is None:
        products = [Product(product_id="t1", title="Minimalist Canvas Tote Bag", price=30)]
    catalog.search_products = AsyncMock(return_value=products)
    catalog.get_product_details = AsyncMock(return_value=None)

    documents = MagicMock()
    documents.check_task_status = AsyncMock(
        side_effect=check_status
        or (
            lambda task_id: TaskStatusResult(
                status="completed", download_url=f"https://x/{task_id}"
            )
        )
    )
    documents.download = AsyncMock(return_value=b"ARTIFACT")
    documents.convert_to_images = AsyncMock(return_value="task-social-2")
    documents.extract_from_document = AsyncMock(return_value="task-split")

    poller = TaskPoller(documents.check_task_status, interval=0.01, timeout=0.2)
    return StyleSession(
        "s1",
        analyzer=analyzer,
        catalog=catalog,
        documents=documents,
        http_client=MagicMock(spec=httpx.AsyncClient),
        poller=poller,
    )


async def _drain(session: StyleSession) -> None:
    for task in [t for t in asyncio.all_tasks() if t.get_name().startswith("poll:")]:
        await asyncio.gather(task, return_exceptions=True)


class TestCompletionMessage:
    def test_variants(self):
        assert completion_message(BatchSummary(completed=3)) == ALL_READY_MESSAGE
        assert completion_message(BatchSummary(failed=2)) == NONE_READY_MESSAGE
        assert completion_message(BatchSummary(completed=1, pending=1, timed_out=True)) == (
            TIMEOUT_MESSAGE
        )
        partial = completion_message(BatchSummary(completed=2, failed=1))
        assert partial.startswith("2 of your style documents are ready for download! 1 ")


class TestTextTurn:
    @pytest.mark.asyncio
    async def test_turn_with_products_generates_guide(self):
        session = _session()
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio",
            new_callable=AsyncMock,
            return_value=_portfolio("compressed", "social-images"),
        ):
            result = await session.send_message("minimalist tote under $50")
            await _drain(session)

        roles = [m.role for m in session.messages]
        assert roles == ["user", "assistant", "assistant", "assistant"]
        reply = session.messages[1]
        assert reply.products and reply.products[0].product_id == "t1"
        bundle = reply.style_documents
        assert bundle is not None
        assert [t.status for t in bundle.processed_versions] == ["completed", "completed"]
        assert "Perfect! I've created" in session.messages[2].content
        assert session.messages[3].content == ALL_READY_MESSAGE
        assert len(result.messages) == 3
        assert session.is_generating_documents is False

    @pytest.mark.asyncio
    async def test_catalog_failure_gives_style_only_reply(self):
        session = _session(products=[])
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio", new_callable=AsyncMock
        ) as create:
            await session.send_message("minimalist tote")

        assert [m.role for m in session.messages] == ["user", "assistant"]
        assert session.messages[1].products is None
        assert session.messages[1].content == "Here are some minimalist totes."
        create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_aesthetic_skips_guide(self):
        analysis = StyleAnalysis(attributes=StyleAttributes(keywords=["tote"]))
        session = _session(analysis=analysis)
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio", new_callable=AsyncMock
        ) as create:
            await session.send_message("a tote")
        create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reply_failure_apologizes(self):
        session = _session(products=[])
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        session._analyzer.reply.side_effect = anthropic.APIConnectionError(request=request)

        await session.send_message("hello")

        assert session.messages[-1].content == APOLOGY_MESSAGE


class TestDocumentErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "content"),
        [
            (TemplateLoadError("Template Loading Failed"), TEMPLATE_ERROR_MESSAGE),
            (DocumentServiceError("Document generation", "401", 401), GENERATION_ERROR_MESSAGE),
            (
                DocumentServiceError("Document generation", "timeout"),
                GENERIC_DOCUMENT_ERROR_MESSAGE,
            ),
        ],
    )
    async def test_failure_becomes_message(self, error, content):
        session = _session()
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio",
            new_callable=AsyncMock,
            side_effect=error,
        ):
            await session.send_message("minimalist tote")

        assert session.messages[-1].content == content
        assert session.document_error == str(error)
        assert session.messages[1].products is not None
        assert session.is_generating_documents is False

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_generic_message(self):
        session = _session()
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio",
            new_callable=AsyncMock,
            side_effect=KeyError("base64FileString"),
        ):
            result = await session.send_message("minimalist tote")

        assert [m.role for m in result.messages] == ["user", "assistant", "assistant"]
        assert session.messages[1].products is not None
        assert session.messages[-1].content == GENERIC_DOCUMENT_ERROR_MESSAGE
        assert session.document_error is not None
        assert session.document_error.startswith("KeyError")
        assert session.is_generating_documents is False

    @pytest.mark.asyncio
    async def test_garbled_upload_reply_keeps_main_document(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("GenerateDocumentBase64"):
                return httpx.Response(200, json={"base64FileString": _PDF_B64})
            if path.endswith("/documents/upload"):
                return httpx.Response(200, text="<html>gateway</html>")
            return httpx.Response(200, json={})

        session = _session()
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        session._documents = DocumentServiceClient("cid", "secret", "https://docs.example", http)

        with (
            patch.object(settings, "style_template_path", str(tmp_path / "missing.docx")),
            patch.object(settings, "style_template_base64", "VA=="),
        ):
            await session.send_message("minimalist tote")

        bundle = session.messages[1].style_documents
        assert bundle is not None
        assert bundle.main_document == _PDF_B64
        assert bundle.document_id is None
        assert bundle.processed_versions == []
        assert session.document_error is None
        assert session.messages[-1].content.startswith("Perfect!")


class TestPollingOutcome:
    @pytest.mark.asyncio
    async def test_timeout_message(self):
        session = _session(
            check_status=lambda task_id: TaskStatusResult(status="processing")
        )
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio",
            new_callable=AsyncMock,
            return_value=_portfolio("compressed"),
        ):
            await session.send_message("minimalist tote")
            await _drain(session)

        assert session.messages[-1].content == TIMEOUT_MESSAGE
        task = session.messages[1].style_documents.processed_versions[0]
        assert task.status == "processing"

    @pytest.mark.asyncio
    async def test_no_jobs_no_polling(self):
        session = _session()
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio",
            new_callable=AsyncMock,
            return_value=StylePortfolio(main_document=_PDF_B64),
        ):
            await session.send_message("minimalist tote")
            await _drain(session)

        assert session.messages[-1].content.startswith("Perfect!")
        session._documents.check_task_status.assert_not_awaited()


class TestImageTurn:
    @pytest.mark.asyncio
    async def test_normalizes_and_analyzes(self):
        session = _session(products=[])
        await session.send_image(_png())

        encoded = session._analyzer.analyze_image.call_args.args[0]
        assert base64.b64decode(encoded)[:2] == b"\xff\xd8"  # JPEG magic
        assert session.messages[0].content == "[Inspiration image]"

    @pytest.mark.asyncio
    async def test_image_url(self):
        session = _session(products=[])
        with patch(
            "fesoni.workflows.style_session.fetch_image_bytes",
            new_callable=AsyncMock,
            return_value=_png(),
        ) as fetch:
            await session.send_image_url("https://img.example/look.png")
        fetch.assert_awaited_once()
        session._analyzer.analyze_image.assert_awaited_once()


def _with_bundle(session: StyleSession, *tasks: ProcessingTask, document_id="doc-1") -> str:
    message = session._append(
        "assistant",
        "here",
        style_documents=DocumentBundle(
            main_document=_PDF_B64, document_id=document_id, processed_versions=list(tasks)
        ),
    )
    return message.id


class TestDocumentActions:
    @pytest.mark.asyncio
    async def test_social_images_appends_and_polls(self):
        session = _session()
        done = ProcessingTask(task_id="old", type="compressed")
        done.resolve("completed", "https://x/old")
        message_id = _with_bundle(session, done)

        bundle = await session.run_document_action(message_id, "social-images")
        await _drain(session)

        assert [t.task_id for t in bundle.processed_versions] == ["old", "task-social-2"]
        assert bundle.processed_versions[1].status == "completed"
        assert session.messages[-1].content == ALL_READY_MESSAGE

    @pytest.mark.asyncio
    async def test_split_submits_per_option(self):
        session = _session()
        message_id = _with_bundle(session)
        session._documents.extract_from_document.side_effect = ["split-a", "split-b"]

        bundle = await session.run_document_action(message_id, "split", ["tops", "bottoms"])
        await _drain(session)

        assert [t.type for t in bundle.processed_versions] == ["split-guide", "split-guide"]

    @pytest.mark.asyncio
    async def test_merge_combines_extra_section(self, tmp_path):
        (tmp_path / "additional-content-template.docx").write_bytes(b"EXTRA")
        session = _session()
        session._documents.generate_document = AsyncMock(return_value=_PDF_B64)
        session._documents.upload_document = AsyncMock(return_value="extra-doc")
        session._documents.combine_documents = AsyncMock(return_value="task-merge")
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio",
            new_callable=AsyncMock,
            return_value=_portfolio(),
        ):
            await session.send_message("minimalist tote")
        owner = session.messages[1]

        with patch.object(settings, "additional_template_dir", str(tmp_path)):
            bundle = await session.run_document_action(
                owner.id, "merge", merge_options=["care-guide"]
            )
        await _drain(session)

        assert [(t.type, t.task_id) for t in bundle.processed_versions] == [
            ("merged-guide", "task-merge")
        ]
        assert bundle.processed_versions[0].status == "completed"
        session._documents.combine_documents.assert_awaited_once()
        assert session._documents.combine_documents.await_args.args[0] == ["doc-1", "extra-doc"]

    @pytest.mark.asyncio
    async def test_merge_needs_generated_guide(self):
        session = _session()
        message_id = _with_bundle(session)
        with pytest.raises(MissingDocumentError):
            await session.run_document_action(message_id, "merge", merge_options=["care-guide"])

    @pytest.mark.asyncio
    async def test_requires_uploaded_document(self):
        session = _session()
        message_id = _with_bundle(session, document_id=None)
        with pytest.raises(MissingDocumentError):
            await session.run_document_action(message_id, "social-images")

    @pytest.mark.asyncio
    async def test_unknown_message(self):
        with pytest.raises(SessionLookupError):
            await _session().run_document_action("nope", "social-images")


class TestDownloads:
    def test_main_document(self):
        session = _session()
        message_id = _with_bundle(session)
        assert session.main_document(message_id) == b"%PDF"

    @pytest.mark.asyncio
    async def test_completed_task(self):
        session = _session()
        task = ProcessingTask(task_id="t1", type="compressed")
        task.resolve("completed", "https://x/t1")
        _with_bundle(session, task)

        assert await session.download_task("t1") == b"ARTIFACT"
        session._documents.download.assert_awaited_once_with("https://x/t1")

    @pytest.mark.asyncio
    async def test_processing_task_not_ready(self):
        session = _session()
        _with_bundle(session, ProcessingTask(task_id="t1", type="compressed"))
        with pytest.raises(DownloadError) as exc_info:
            await session.download_task("t1")
        assert exc_info.value.kind == "not_ready"

    @pytest.mark.asyncio
    async def test_unknown_task(self):
        with pytest.raises(SessionLookupError):
            await _session().download_task("missing")


class TestBudget:
    @pytest.mark.asyncio
    async def test_uses_turn_budget(self):
        alt = Product(product_id="alt", title="Cheaper Tote", price=15)
        products = [
            Product(product_id="t1", title="Minimalist Tote Bag", price=45),
            Product(product_id="t2", title="Minimalist Tote Bag Large", price=40),
        ]
        session = _session(products=products)
        with (
            patch(
                "fesoni.workflows.style_session.create_style_portfolio",
                new_callable=AsyncMock,
                return_value=StylePortfolio(main_document=_PDF_B64),
            ),
            patch(
                "fesoni.activities.product_search.find_alternatives",
                new_callable=AsyncMock,
                side_effect=lambda catalog, p, attrs: p.model_copy(
                    update={"alternative_products": [alt]}
                ),
            ),
        ):
            await session.send_message("minimalist totes under $50")

        message = session.messages[1]
        response = session.budget(message.id)

        assert response.over_budget is True
        assert response.breakdown.total_cost <= 50
        assert message.products == response.optimized_products

    def test_no_products(self):
        session = _session()
        message_id = _with_bundle(session)
        with pytest.raises(SessionLookupError):
            session.budget(message_id, 10)

    async def _turn(self, session: StyleSession, alternatives: list[Product]) -> str:
        with (
            patch(
                "fesoni.workflows.style_session.create_style_portfolio",
                new_callable=AsyncMock,
                return_value=StylePortfolio(main_document=_PDF_B64),
            ),
            patch(
                "fesoni.activities.product_search.find_alternatives",
                new_callable=AsyncMock,
                side_effect=lambda catalog, p, attrs: p.model_copy(
                    update={"alternative_products": alternatives}
                ),
            ),
        ):
            await session.send_message("minimalist totes")
        return session.messages[1].id

    @pytest.mark.asyncio
    async def test_nothing_fits_keeps_products(self):
        products = [
            Product(product_id="t1", title="Minimalist Tote Bag", price=45),
            Product(product_id="t2", title="Minimalist Tote Bag Large", price=40),
        ]
        session = _session(products=products)
        message_id = await self._turn(session, [])

        response = session.budget(message_id, 10)

        assert response.optimized_products == []
        assert len(session.get_message(message_id).products) == 2
        assert session.budget(message_id, 100).breakdown.total_cost == 85.0

    @pytest.mark.asyncio
    async def test_swap_fills_catalog_details(self):
        alt = Product(product_id="alt", title="Cheaper Tote", price=15)
        session = _session(
            products=[Product(product_id="t1", title="Minimalist Tote Bag", price=45)]
        )
        message_id = await self._turn(session, [alt])
        session._catalog.get_product_details = AsyncMock(
            return_value=Product(
                product_id="alt", title="Cheaper Tote (Detail)", price=16, brand="Acme", rating=4.6
            )
        )

        swapped = await session.swap(message_id, "t1", 0)

        assert swapped[0].product_id == "alt"
        assert swapped[0].brand == "Acme"
        assert swapped[0].rating == 4.6
        assert swapped[0].title == "Cheaper Tote"
        assert swapped[0].price == 15
        session._catalog.get_product_details.assert_awaited_once_with("alt")
        assert session.get_message(message_id).products == swapped

    @pytest.mark.asyncio
    async def test_swap_without_details_keeps_alternative(self):
        alt = Product(product_id="alt", title="Cheaper Tote", price=15)
        session = _session(
            products=[Product(product_id="t1", title="Minimalist Tote Bag", price=45)]
        )
        message_id = await self._turn(session, [alt])
        session._catalog.get_product_details = AsyncMock(return_value=None)

        swapped = await session.swap(message_id, "t1", 0)

        assert swapped[0].product_id == "alt"
        assert swapped[0].brand is None


class TestClose:
    @pytest.mark.asyncio
    async def test_cancels_polling(self):
        session = _session(check_status=lambda task_id: TaskStatusResult(status="processing"))
        with patch(
            "fesoni.workflows.style_session.create_style_portfolio",
            new_callable=AsyncMock,
            return_value=_portfolio("compressed"),
        ):
            await session.send_message("minimalist tote")

        await session.close()
        assert not session._poller.is_running(session.messages[1].id)
