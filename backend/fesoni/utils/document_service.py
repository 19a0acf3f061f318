"""Foxit document-generation and PDF-services client.

Covers the calls the style guide needs: template rendering, document
upload, asynchronous processing jobs (compress, extract, convert to
images, combine), task status polling and artifact download. Every
processing call returns an opaque task id; `check_task_status` translates
the remote status vocabulary to processing/completed/failed.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Literal

import httpx
import structlog

from fesoni.config import settings
from fesoni.models.contracts import DownloadErrorKind, TaskStatus

log = structlog.get_logger("document_service")

REQUEST_TIMEOUT = 60.0

_PROCESSING_STATUSES = frozenset({"PENDING", "PROCESSING"})

_DOWNLOAD_MESSAGES: dict[str, str] = {
    "expired": "Document has expired (available for 24 hours only)",
    "not_ready": "Document is still processing. Please try again in a moment.",
    "auth": "Authentication error. Please refresh and try again.",
}


class DocumentServiceError(Exception):
    """A document-service call failed (network error or non-2xx response)."""

    def __init__(self, operation: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class DownloadError(DocumentServiceError):
    """A download failed; `kind` is one of expired, not_ready, auth, generic."""

    def __init__(self, kind: DownloadErrorKind, message: str, status_code: int | None = None):
        super().__init__("download", message, status_code)
        self.kind = kind


@dataclass(frozen=True)
class TaskStatusResult:
    status: TaskStatus
    download_url: str | None = None
    remote_status: str | None = None


def map_remote_status(remote: Any) -> TaskStatus:
    """PENDING/PROCESSING -> processing, COMPLETED -> completed, anything else -> failed.

    Unknown or missing statuses count as failed so a batch always terminates.
    """
    if not isinstance(remote, str):
        return "failed"
    value = remote.strip().upper()
    if value in _PROCESSING_STATUSES:
        return "processing"
    if value == "COMPLETED":
        return "completed"
    return "failed"


def classify_download_failure(status_code: int | None, body: str = "") -> DownloadError:
    """Sort a failed download into one of the four user-facing buckets."""
    text = body.lower()
    if status_code in (401, 403) or "authentication" in text or "unauthorized" in text:
        kind: DownloadErrorKind = "auth"
    elif status_code in (404, 410) or "expired" in text:
        kind = "expired"
    elif status_code in (202, 409, 425) or "not ready" in text or "still processing" in text:
        kind = "not_ready"
    else:
        kind = "generic"

    if kind == "generic":
        suffix = f": HTTP {status_code}" if status_code else ""
        message = f"Failed to download document{suffix}"
    else:
        message = _DOWNLOAD_MESSAGES[kind]
    return DownloadError(kind, message, status_code)


class DocumentServiceClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        base = base_url.rstrip("/")
        self.document_generation_url = f"{base}/document-generation"
        self.pdf_services_url = f"{base}/pdf-services"
        self._http = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient | None = None) -> DocumentServiceClient:
        return cls(
            settings.foxit_client_id,
            settings.foxit_client_secret,
            settings.foxit_base_url,
            http_client,
        )

    @property
    def _auth_headers(self) -> dict[str, str]:
        credentials = base64.b64encode(f"{self._client_id}:{self._client_secret}".encode()).decode()
        return {
            "Authorization": f"Basic {credentials}",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }

    async def aclose(self) -> None:
        await self._http.aclose()

    def document_download_url(self, document_id: str) -> str:
        return f"{self.pdf_services_url}/api/documents/{document_id}/download"

    async def _post_json(self, operation: str, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._http.post(url, json=body, headers=self._auth_headers)
        except httpx.RequestError as exc:
            log.error("document_service_request_error", operation=operation, error=str(exc))
            raise DocumentServiceError(
                operation, f"{operation} failed: {type(exc).__name__}"
            ) from exc

        if resp.status_code >= 400:
            log.error(
                "document_service_http_error",
                operation=operation,
                status=resp.status_code,
                body=resp.text[:300],
            )
            raise DocumentServiceError(
                operation,
                f"{operation} failed: {resp.status_code} {resp.reason_phrase}",
                resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise DocumentServiceError(
                operation, f"{operation} returned invalid JSON", resp.status_code
            ) from exc
        if not isinstance(data, dict):
            raise DocumentServiceError(operation, f"{operation} returned an unexpected body")
        return data

    async def _submit_task(self, operation: str, path: str, body: dict[str, Any]) -> str:
        data = await self._post_json(operation, f"{self.pdf_services_url}{path}", body)
        task_id = data.get("taskId")
        if not task_id:
            raise DocumentServiceError(operation, f"{operation} response has no taskId")
        log.info("document_task_submitted", operation=operation, task_id=task_id)
        return str(task_id)

    # --- Document generation ---

    async def generate_document(
        self,
        template_base64: str,
        values: dict[str, Any],
        output_format: Literal["pdf", "docx"] = "pdf",
    ) -> str:
        """Render a template with data. Returns the base64 document."""
        data = await self._post_json(
            "Document generation",
            f"{self.document_generation_url}/api/GenerateDocumentBase64",
            {
                "documentValues": values,
                "base64FileString": template_base64,
                "outputFormat": output_format,
                "currencyCulture": "en-US",
            },
        )
        content = data.get("base64FileString")
        if not content:
            raise DocumentServiceError(
                "Document generation", "Document generation returned no document"
            )
        return str(content)

    async def analyze_template(self, template_base64: str) -> dict[str, list[str]]:
        """List the single and double tags the service detects in a template."""
        data = await self._post_json(
            "Template analysis",
            f"{self.document_generation_url}/api/AnalyzeDocumentBase64",
            {"base64FileString": template_base64},
        )
        return {
            "single_tags": list(data.get("singleTagsString") or []),
            "double_tags": list(data.get("doubleTagsString") or []),
        }

    # --- PDF services ---

    async def upload_document(self, content: bytes, filename: str = "document.pdf") -> str:
        """Upload a PDF. Returns the remote document id."""
        operation = "Upload"
        try:
            resp = await self._http.post(
                f"{self.pdf_services_url}/api/documents/upload",
                files={"file": (filename, content, "application/pdf")},
                headers=self._auth_headers,
            )
        except httpx.RequestError as exc:
            raise DocumentServiceError(operation, f"Upload failed: {type(exc).__name__}") from exc

        if resp.status_code >= 400:
            log.error("document_upload_failed", status=resp.status_code, body=resp.text[:300])
            raise DocumentServiceError(
                operation,
                f"Upload failed: {resp.status_code} {resp.reason_phrase}",
                resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            log.error("document_upload_invalid_json", body=resp.text[:300])
            raise DocumentServiceError(
                operation, "Upload returned invalid JSON", resp.status_code
            ) from exc
        if not isinstance(data, dict):
            raise DocumentServiceError(operation, "Upload returned an unexpected body")
        document_id = data.get("documentId")
        if not document_id:
            raise DocumentServiceError(operation, "Upload response has no documentId")
        log.info("document_uploaded", document_id=document_id, size=len(content))
        return str(document_id)

    async def compress_document(
        self,
        document_id: str,
        compression_level: Literal["HIGH", "MEDIUM", "LOW"] = "LOW",
    ) -> str:
        return await self._submit_task(
            "Compression",
            "/api/documents/modify/pdf-compress",
            {"documentId": document_id, "compressionLevel": compression_level},
        )

    async def extract_from_document(
        self,
        document_id: str,
        extract_type: Literal["TEXT", "IMAGE", "PAGE"],
        page_range: str | None = None,
    ) -> str:
        body: dict[str, Any] = {"documentId": document_id, "extractType": extract_type}
        if page_range:
            body["pageRange"] = page_range
        return await self._submit_task("Extraction", "/api/documents/modify/pdf-extract", body)

    async def convert_to_images(
        self,
        document_id: str,
        page_range: str | None = None,
        dpi: int = 150,
    ) -> str:
        body: dict[str, Any] = {"documentId": document_id, "config": {"dpi": dpi}}
        if page_range:
            body["pageRange"] = page_range
        return await self._submit_task(
            "Image conversion", "/api/documents/convert/pdf-to-image", body
        )

    async def combine_documents(
        self,
        document_ids: list[str],
        config: dict[str, Any] | None = None,
    ) -> str:
        return await self._submit_task(
            "Document combine",
            "/api/documents/enhance/pdf-combine",
            {
                "documentInfos": [{"documentId": d, "password": ""} for d in document_ids],
                "config": config
                or {
                    "addBookmark": True,
                    "continueMergeOnError": True,
                    "retainPageNumbers": False,
                },
            },
        )

    async def check_task_status(self, task_id: str) -> TaskStatusResult:
        """Query one task. Raises DocumentServiceError if the query itself fails."""
        operation = "Task status"
        try:
            resp = await self._http.get(
                f"{self.pdf_services_url}/api/tasks/{task_id}",
                headers=self._auth_headers,
            )
        except httpx.RequestError as exc:
            raise DocumentServiceError(
                operation, f"Task status failed: {type(exc).__name__}"
            ) from exc
        if resp.status_code >= 400:
            raise DocumentServiceError(
                operation, f"Task status failed: {resp.status_code}", resp.status_code
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise DocumentServiceError(operation, "Task status returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise DocumentServiceError(operation, "Task status returned an unexpected body")

        remote = data.get("status")
        status = map_remote_status(remote)
        if status != "completed":
            return TaskStatusResult(status=status, remote_status=remote)

        download_url = data.get("downloadUrl")
        if not download_url and data.get("resultDocumentId"):
            download_url = self.document_download_url(str(data["resultDocumentId"]))
        if not download_url:
            log.warning("document_task_completed_without_result", task_id=task_id)
            return TaskStatusResult(status="failed", remote_status=remote)
        return TaskStatusResult(status="completed", download_url=download_url, remote_status=remote)

    async def download(self, document_id_or_url: str, filename: str | None = None) -> bytes:
        """Download by document id or full URL. Raises a classified DownloadError."""
        if document_id_or_url.startswith(("http://", "https://")):
            url = document_id_or_url
        else:
            url = self.document_download_url(document_id_or_url)
        params = {"filename": filename} if filename else None

        try:
            resp = await self._http.get(url, params=params, headers=self._auth_headers)
        except httpx.RequestError as exc:
            log.error("document_download_request_error", error=str(exc))
            raise DownloadError("generic", "Failed to download document") from exc

        if resp.status_code >= 400 or resp.status_code == 202:
            log.warning("document_download_failed", status=resp.status_code, body=resp.text[:300])
            raise classify_download_failure(resp.status_code, resp.text)
        return resp.content
