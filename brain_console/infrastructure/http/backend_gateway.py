from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import httpx
import structlog

from brain_console.core.settings import Settings, settings as default_settings
from brain_console.domain.exceptions import BackendRequestError, BackendUnavailableError
from brain_console.domain.schemas.analysis import BusinessProfileCards, EnhancementAnalysis
from brain_console.domain.schemas.uploads import EntitySnapshot, PendingFile, UploadAuthorization, UploadedFileRef
from brain_console.infrastructure.observability.logger_config import compact_error

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AnalysisEnvelope:
    analysis: EnhancementAnalysis
    last_analyzed_at: Optional[str] = None


def _build_auth_headers(
    api_key: Optional[str],
    default_headers: Optional[Dict[str, str]],
) -> Dict[str, str]:
    headers = dict(default_headers or {})
    if api_key and "Authorization" not in headers:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _raise_from_http_error(status_code: int, response_text: str, response_headers: Mapping[str, str], payload: Any) -> None:
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, str):
        error = {"code": "BACKEND_ERROR", "message": error, "details": payload.get("details")}
    if not isinstance(error, dict):
        error = {
            "code": "UNPARSEABLE_ERROR",
            "message": response_text or f"HTTP {status_code}",
            "details": None,
        }

    raise BackendRequestError(
        status=status_code,
        code=str(error.get("code") or "UNKNOWN_ERROR"),
        message=str(error.get("message") or "Request failed"),
        details=error.get("details"),
        request_id=str(error.get("request_id") or response_headers.get("X-Correlation-ID") or "unknown"),
    )


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _require_success(response: httpx.Response, data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise BackendRequestError(
            status=response.status_code,
            code="UNEXPECTED_BODY",
            message="Expected a JSON object from the backend",
        )
    if data.get("success") is False:
        _raise_from_http_error(response.status_code, response.text, response.headers, data)
    return data


class BackendGateway:
    """
    Async client for the enhancement backend.

    Every call raises BackendRequestError on a non-2xx status and
    BackendUnavailableError on a transport failure. Nothing is retried.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        default_headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        storage_client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.base_url = (base_url or self.config.BACKEND_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else self.config.BACKEND_API_KEY
        self.timeout_seconds = timeout_seconds or self.config.BACKEND_TIMEOUT_SECONDS
        self.default_headers = default_headers or {}
        self._managed_client = client is None
        self._managed_storage_client = storage_client is None
        self.client = client or httpx.AsyncClient(timeout=self.timeout_seconds)
        self.storage_client = storage_client or httpx.AsyncClient(timeout=self.config.UPLOAD_TIMEOUT_SECONDS)

    async def __aenter__(self) -> "BackendGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._managed_client:
            await self.client.aclose()
        if self._managed_storage_client:
            await self.storage_client.aclose()

    # --- analysis jobs -----------------------------------------------------------

    @asynccontextmanager
    async def open_job(
        self,
        intake: Dict[str, Any],
        files: Optional[Mapping[str, Sequence[PendingFile]]] = None,
        path: Optional[str] = None,
    ) -> AsyncIterator[httpx.Response]:
        """Submit an analysis job and yield the open response once its status is known to be 2xx."""
        url = self._url(path or self.config.JOB_SUBMIT_PATH)
        request_kwargs: Dict[str, Any] = {}
        multipart = [
            (field_id, (f.name, f.content, f.resolved_mime_type))
            for field_id, queued in (files or {}).items()
            for f in queued
        ]
        if multipart:
            request_kwargs["data"] = {"intake_json": json.dumps(intake)}
            request_kwargs["files"] = multipart
        else:
            request_kwargs["json"] = intake

        timeout = httpx.Timeout(self.timeout_seconds, read=self.config.JOB_STREAM_TIMEOUT_SECONDS)
        try:
            async with self.client.stream(
                "POST",
                url,
                headers=_build_auth_headers(self.api_key, self.default_headers),
                timeout=timeout,
                **request_kwargs,
            ) as response:
                if response.is_error:
                    await response.aread()
                    _raise_from_http_error(response.status_code, response.text, response.headers, _safe_json(response))
                yield response
        except httpx.TransportError as exc:
            logger.error("job_transport_failed", url=url, error=compact_error(exc))
            raise BackendUnavailableError(f"Analysis job connection failed: {compact_error(exc)}") from exc

    # --- uploads -------------------------------------------------------------------

    async def request_upload_authorization(
        self,
        *,
        file_name: str,
        mime_type: str,
        field_id: str,
        max_size: int,
        allowed_mime_types: Sequence[str] = (),
    ) -> UploadAuthorization:
        payload = {
            "fileName": file_name,
            "fileType": mime_type,
            "mimeType": mime_type,
            "fieldId": field_id,
            "maxSize": max_size,
            "allowedMimeTypes": list(allowed_mime_types),
        }
        data = await self._request("POST", self.config.UPLOAD_AUTHORIZATION_PATH, json_body=payload)
        return UploadAuthorization.model_validate(data)

    async def put_object(self, authorized_url: str, content: bytes, mime_type: str) -> None:
        try:
            response = await self.storage_client.put(
                authorized_url,
                content=content,
                headers={"Content-Type": mime_type},
            )
        except httpx.TransportError as exc:
            raise BackendUnavailableError(f"Storage transfer failed: {compact_error(exc)}") from exc
        if response.is_error:
            raise BackendRequestError(
                status=response.status_code,
                code="STORAGE_PUT_FAILED",
                message=compact_error(response.text) or f"Storage rejected the upload (HTTP {response.status_code})",
            )

    # --- enhancement pipeline ----------------------------------------------------

    async def fetch_completion_analysis(self, entity_id: str, force_refresh: bool = False) -> AnalysisEnvelope:
        data = await self._request(
            "POST",
            self.config.COMPLETION_ANALYSIS_PATH,
            json_body={"businessBrainId": entity_id, "forceRefresh": bool(force_refresh)},
        )
        raw = data.get("enhancementAnalysis")
        if not isinstance(raw, dict):
            raise BackendRequestError(status=200, code="MISSING_ANALYSIS", message="Completion analysis missing from response")
        return AnalysisEnvelope(
            analysis=EnhancementAnalysis.model_validate(raw),
            last_analyzed_at=data.get("lastAnalyzedAt"),
        )

    async def persist_answers(
        self,
        entity_id: str,
        text_answers: Mapping[str, str],
        uploaded_files: Mapping[str, List[UploadedFileRef]],
    ) -> Dict[str, Any]:
        payload = {
            "intake_json": json.dumps(dict(text_answers)),
            "file_urls": {
                field_id: [ref.to_wire() for ref in refs]
                for field_id, refs in uploaded_files.items()
                if refs
            },
        }
        return await self._request("POST", self.config.PERSIST_PATH_TEMPLATE.format(entity_id=entity_id), json_body=payload)

    async def regenerate_artifacts(self, entity_id: str) -> Optional[BusinessProfileCards]:
        data = await self._request("POST", self.config.REGENERATE_PATH, params={"profileId": entity_id})
        cards = data.get("cards")
        if not isinstance(cards, list):
            return None
        return BusinessProfileCards.model_validate({"cards": cards, "metadata": data.get("metadata") or {}})

    async def synthesize_knowledge(self, entity_id: str) -> Dict[str, Any]:
        return await self._request("POST", self.config.SYNTHESIZE_PATH_TEMPLATE.format(entity_id=entity_id))

    async def fetch_entity(self, entity_id: str) -> EntitySnapshot:
        data = await self._request("GET", self.config.ENTITY_PATH_TEMPLATE.format(entity_id=entity_id))
        raw = data.get("businessBrain") if isinstance(data.get("businessBrain"), dict) else data
        return EntitySnapshot.model_validate({"id": entity_id, **raw})

    # --- plumbing --------------------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = self._url(path)
        try:
            response = await self.client.request(
                method=method,
                url=url,
                headers=_build_auth_headers(self.api_key, self.default_headers),
                params=params,
                json=json_body,
            )
        except httpx.TransportError as exc:
            logger.error("backend_transport_failed", method=method, url=url, error=compact_error(exc))
            raise BackendUnavailableError(f"{method} {path} failed: {compact_error(exc)}") from exc

        payload = _safe_json(response)
        if response.is_error:
            _raise_from_http_error(response.status_code, response.text, response.headers, payload)
        return _require_success(response, payload)
