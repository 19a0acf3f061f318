"""Chat session endpoints.

Sessions live in an in-memory dict keyed by session id; restarting the
process discards them. Remote clients are created once per process and
shared by every session.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import httpx
import structlog
from fastapi import APIRouter, Form, Response, UploadFile
from fastapi.responses import JSONResponse

from fesoni.activities.style_analysis import StyleAnalyzer
from fesoni.models.contracts import (
    BudgetRequest,
    BudgetResponse,
    CreateSessionResponse,
    DocumentActionRequest,
    DocumentBundle,
    ErrorResponse,
    MessageRequest,
    ScoredProduct,
    SessionState,
    SwapRequest,
    TurnResult,
)
from fesoni.utils.catalog import CatalogClient
from fesoni.utils.document_service import DocumentServiceClient, DownloadError
from fesoni.utils.image import MAX_IMAGE_BYTES, InvalidImageError
from fesoni.workflows.style_session import (
    MissingDocumentError,
    SessionLookupError,
    StyleSession,
)

logger = structlog.get_logger()

router = APIRouter(tags=["sessions"])

_DOWNLOAD_STATUS: dict[str, int] = {
    "expired": 410,
    "not_ready": 409,
    "auth": 502,
    "generic": 502,
}


@dataclass
class _Services:
    analyzer: StyleAnalyzer
    catalog: CatalogClient
    documents: DocumentServiceClient
    http: httpx.AsyncClient

    @classmethod
    def from_settings(cls) -> _Services:
        http = httpx.AsyncClient()
        return cls(
            analyzer=StyleAnalyzer.from_settings(),
            catalog=CatalogClient.from_settings(http),
            documents=DocumentServiceClient.from_settings(),
            http=http,
        )

    async def aclose(self) -> None:
        await self.documents.aclose()
        await self.http.aclose()


_services: _Services | None = None
_sessions: dict[str, StyleSession] = {}


def _get_services() -> _Services:
    global _services
    if _services is None:
        _services = _Services.from_settings()
    return _services


async def shutdown() -> None:
    """Stop every session's pollers and close the shared clients."""
    global _services
    for session in list(_sessions.values()):
        await session.close()
    _sessions.clear()
    if _services is not None:
        await _services.aclose()
        _services = None


def _error(status: int, code: str, message: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(),
    )


_NOT_FOUND = ("session_not_found", "Session not found")

_ERROR_RESPONSES = {404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}


def _lookup_error(exc: SessionLookupError) -> JSONResponse:
    return _error(404, "not_found", str(exc))


@router.post("/sessions", status_code=201, response_model=CreateSessionResponse)
async def create_session() -> CreateSessionResponse:
    services = _get_services()
    session_id = str(uuid.uuid4())
    _sessions[session_id] = StyleSession(
        session_id,
        analyzer=services.analyzer,
        catalog=services.catalog,
        documents=services.documents,
        http_client=services.http,
    )
    logger.info("session_created", session_id=session_id)
    return CreateSessionResponse(session_id=session_id)


@router.get(
    "/sessions/{session_id}",
    response_model=SessionState,
    responses={404: {"model": ErrorResponse}},
)
async def get_session(session_id: str):
    session = _sessions.get(session_id)
    if session is None:
        return _error(404, *_NOT_FOUND)
    return session.state()


@router.delete(
    "/sessions/{session_id}",
    status_code=204,
    responses={404: {"model": ErrorResponse}},
)
async def delete_session(session_id: str):
    session = _sessions.pop(session_id, None)
    if session is None:
        return _error(404, *_NOT_FOUND)
    await session.close()
    logger.info("session_deleted", session_id=session_id)
    return Response(status_code=204)


@router.post(
    "/sessions/{session_id}/messages",
    response_model=TurnResult,
    responses={404: {"model": ErrorResponse}},
)
async def send_message(session_id: str, body: MessageRequest):
    """User text -> analysis -> product search -> reply (-> style guide)."""
    session = _sessions.get(session_id)
    if session is None:
        return _error(404, *_NOT_FOUND)
    return await session.send_message(body.message)


@router.post(
    "/sessions/{session_id}/images",
    response_model=TurnResult,
    responses={
        404: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def upload_image(
    session_id: str,
    file: UploadFile | None = None,
    image_url: str | None = Form(default=None),
):
    """Inspiration image, either uploaded or given by URL."""
    session = _sessions.get(session_id)
    if session is None:
        return _error(404, *_NOT_FOUND)
    if file is None and not image_url:
        return _error(422, "missing_image", "Provide an image file or an image_url")

    try:
        if file is None:
            return await session.send_image_url(image_url or "")

        # Stream-read with early termination to avoid buffering unbounded uploads
        chunks: list[bytes] = []
        total = 0
        while chunk := await file.read(65_536):
            total += len(chunk)
            if total > MAX_IMAGE_BYTES:
                mb = MAX_IMAGE_BYTES // (1024 * 1024)
                return _error(413, "file_too_large", f"Image exceeds {mb} MB limit")
            chunks.append(chunk)
        return await session.send_image(b"".join(chunks))
    except InvalidImageError as exc:
        return _error(422, "invalid_image", str(exc))


@router.post(
    "/sessions/{session_id}/messages/{message_id}/actions",
    response_model=DocumentBundle,
    responses=_ERROR_RESPONSES,
)
async def run_document_action(session_id: str, message_id: str, body: DocumentActionRequest):
    """Follow-up processing (social images, split guides, merged packages) for a style guide."""
    session = _sessions.get(session_id)
    if session is None:
        return _error(404, *_NOT_FOUND)
    if body.action == "split" and not body.split_options:
        return _error(422, "missing_split_options", "Choose at least one split option")
    if body.action == "merge" and not body.merge_options:
        return _error(422, "missing_merge_options", "Choose at least one merge option")
    try:
        return await session.run_document_action(
            message_id, body.action, list(body.split_options), list(body.merge_options)
        )
    except SessionLookupError as exc:
        return _lookup_error(exc)
    except MissingDocumentError as exc:
        return _error(409, "document_not_uploaded", str(exc))


@router.post(
    "/sessions/{session_id}/messages/{message_id}/budget",
    response_model=BudgetResponse,
    responses={404: {"model": ErrorResponse}},
)
async def budget_products(session_id: str, message_id: str, body: BudgetRequest):
    session = _sessions.get(session_id)
    if session is None:
        return _error(404, *_NOT_FOUND)
    try:
        return session.budget(message_id, body.target_budget)
    except SessionLookupError as exc:
        return _lookup_error(exc)


@router.post(
    "/sessions/{session_id}/messages/{message_id}/swap",
    response_model=list[ScoredProduct],
    responses={404: {"model": ErrorResponse}},
)
async def swap_product(session_id: str, message_id: str, body: SwapRequest):
    session = _sessions.get(session_id)
    if session is None:
        return _error(404, *_NOT_FOUND)
    try:
        return await session.swap(message_id, body.product_id, body.alternative_index)
    except LookupError as exc:
        return _error(404, "not_found", str(exc))


@router.get(
    "/sessions/{session_id}/messages/{message_id}/document",
    responses={404: {"model": ErrorResponse}},
)
async def download_main_document(session_id: str, message_id: str):
    session = _sessions.get(session_id)
    if session is None:
        return _error(404, *_NOT_FOUND)
    try:
        content = session.main_document(message_id)
    except SessionLookupError as exc:
        return _lookup_error(exc)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": 'attachment; filename="style-guide.pdf"'},
    )


@router.get(
    "/sessions/{session_id}/tasks/{task_id}/download",
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        410: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def download_task(session_id: str, task_id: str):
    """Download a processed version; failures carry the download error kind."""
    session = _sessions.get(session_id)
    if session is None:
        return _error(404, *_NOT_FOUND)
    try:
        task = session.get_task(task_id)
        content = await session.download_task(task_id)
    except SessionLookupError as exc:
        return _lookup_error(exc)
    except DownloadError as exc:
        logger.warning("task_download_failed", task_id=task_id, kind=exc.kind)
        return _error(
            _DOWNLOAD_STATUS[exc.kind],
            exc.kind,
            str(exc),
            retryable=exc.kind == "not_ready",
        )

    media_type = "application/octet-stream" if task.type == "social-images" else "application/pdf"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{task.type}-{task_id}"'},
    )
