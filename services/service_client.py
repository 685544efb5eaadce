"""
# services/service_client.py

Module Contract
- Purpose: Single async HTTP interface over the external analysis, storage, task and vision services.
- Inputs:
  - base_url/token/paths from config.app_config (overridable); optional pre-built httpx.AsyncClient (tests pass one with MockTransport)
- Outputs:
  - stream_analysis(AnalysisRequest) -> async iterator of text chunks
  - request_upload_slot(filename, content_type) -> UploadSlot
  - request_download_url(key) -> str
  - put_bytes(write_url, asset, on_progress) -> None
  - convert(key) -> ConvertResult
  - create_task(TaskRequest) -> task id
  - stream_vision_analysis(metadata, video_url=..., asset=...) -> async iterator of status dicts
- Error handling:
  - Non-2xx and transport errors are raised as the matching ServiceError subclass with the response body as message.
- Side effects:
  - Network I/O; owns the httpx client unless one was injected.
"""
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from config.app_config import (
    API_BASE_URL,
    API_MAX_CONNECTIONS,
    API_MAX_KEEPALIVE,
    API_PATHS,
    API_TIMEOUT_S,
    API_TOKEN,
    STREAM_TIMEOUT_S,
    UPLOAD_CHUNK_BYTES,
    UPLOAD_TIMEOUT_S,
)
from core.conversation import Settings, TaskType, VideoAsset
from core.errors import (
    AnalysisServiceError,
    ConversionError,
    TaskCreationError,
    UploadError,
    VisionAnalysisError,
)
from utils.logging_utils import get_logger, log_and_time, log_async_operation

logger = get_logger("service_client")

ProgressCallback = Callable[[float], None]


@dataclass
class AnalysisRequest:
    prompt: str
    settings: Settings
    video_url: Optional[str] = None
    history_json: Optional[str] = None
    thinking_budget: Optional[int] = None

    def to_form(self) -> Dict[str, str]:
        form = {
            "prompt": self.prompt,
            "thinkingMode": self.settings.thinking_mode.value,
            "mediaResolution": self.settings.media_resolution.value,
            "domainExpertise": self.settings.domain_expertise,
        }
        if self.video_url:
            form["videoUrl"] = self.video_url
        if self.history_json:
            form["history"] = self.history_json
        if self.thinking_budget is not None:
            form["thinkingBudget"] = str(self.thinking_budget)
        return form


@dataclass
class UploadSlot:
    write_url: str
    read_url: str
    key: str


@dataclass
class ConvertResult:
    success: bool
    url: Optional[str] = None
    key: Optional[str] = None


@dataclass
class TaskRequest:
    task_type: TaskType
    sport: str
    video_url: str
    thumbnail_url: Optional[str] = None
    video_length: Optional[float] = None

    def to_body(self) -> Dict[str, Any]:
        return {
            "taskType": self.task_type.value,
            "sport": self.sport,
            "videoUrl": self.video_url,
            "thumbnailUrl": self.thumbnail_url,
            "videoLength": self.video_length,
        }


def _json_body(response: httpx.Response, error_cls, what: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise error_cls(f"{what}: response was not JSON ({e})", response.status_code) from e
    if not isinstance(data, dict):
        raise error_cls(f"{what}: unexpected response shape", response.status_code)
    return data


async def _error_text(response: httpx.Response) -> str:
    try:
        body = await response.aread()
    except httpx.HTTPError:
        return ""
    return body.decode("utf-8", errors="replace").strip()


class ServiceClient:
    """Async client for every external service the pipeline calls."""

    def __init__(
        self,
        base_url: str = None,
        token: Optional[str] = None,
        paths: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        upload_chunk_bytes: int = UPLOAD_CHUNK_BYTES,
    ):
        self.base_url = (base_url or API_BASE_URL).rstrip("/")
        self.token = token if token is not None else API_TOKEN
        self.paths = dict(API_PATHS)
        self.paths.update(paths or {})
        self.upload_chunk_bytes = upload_chunk_bytes
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(API_TIMEOUT_S),
            limits=httpx.Limits(
                max_connections=API_MAX_CONNECTIONS,
                max_keepalive_connections=API_MAX_KEEPALIVE,
            ),
            headers={"Connection": "keep-alive"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    def _url(self, name: str) -> str:
        path = self.paths[name]
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def stream_analysis(self, request: AnalysisRequest) -> AsyncIterator[str]:
        """POST the analysis form and yield decoded text chunks as they arrive."""
        headers = {"x-stream": "true", **self._auth_headers()}
        logger.debug(
            f"[STREAMING] POST analysis video={'yes' if request.video_url else 'no'} "
            f"history={'yes' if request.history_json else 'no'} mode={request.settings.thinking_mode.value}"
        )
        try:
            async with self.http.stream(
                "POST",
                self._url("analysis"),
                data=request.to_form(),
                headers=headers,
                timeout=httpx.Timeout(API_TIMEOUT_S, read=STREAM_TIMEOUT_S),
            ) as response:
                if response.status_code >= 400:
                    text = await _error_text(response)
                    raise AnalysisServiceError(text or "Failed to get response", response.status_code)
                async for chunk in response.aiter_text():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as e:
            logger.error(f"[STREAMING] Transport error: {type(e).__name__}: {e}")
            raise AnalysisServiceError(f"Analysis request failed: {e}") from e

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    @log_and_time("Upload Slot")
    async def request_upload_slot(self, filename: str, content_type: str) -> UploadSlot:
        try:
            response = await self.http.post(
                self._url("upload_slot"),
                json={"fileName": filename, "contentType": content_type},
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise UploadError(f"Failed to get upload URL: {e}") from e
        if response.status_code >= 400:
            raise UploadError(response.text or "Failed to get upload URL", response.status_code)

        data = _json_body(response, UploadError, "Upload slot")
        read_url = data.get("downloadUrl") or data.get("publicUrl")
        if not data.get("url") or not read_url or not data.get("key"):
            raise UploadError(f"Upload slot response missing fields: {sorted(data)}")
        return UploadSlot(write_url=data["url"], read_url=read_url, key=data["key"])

    @log_async_operation
    async def request_download_url(self, key: str, expires_in: int = 7 * 24 * 3600) -> str:
        """Fresh pre-signed read URL for an object already in storage."""
        try:
            response = await self.http.post(
                self._url("download_url"),
                json={"key": key, "expiresIn": expires_in},
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise UploadError(f"Failed to get download URL: {e}") from e
        if response.status_code >= 400:
            raise UploadError(response.text or "Failed to get download URL", response.status_code)
        url = _json_body(response, UploadError, "Download URL").get("downloadUrl")
        if not url:
            raise UploadError("Download URL response missing downloadUrl")
        return url

    @log_and_time("Upload PUT")
    async def put_bytes(
        self,
        write_url: str,
        asset: VideoAsset,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Stream the asset to the pre-signed URL, reporting 0-100 progress per chunk."""
        total = asset.size_bytes or 0
        chunk_size = self.upload_chunk_bytes

        async def body():
            sent = 0
            async for chunk in asset.aiter_chunks(chunk_size):
                yield chunk
                sent += len(chunk)
                if on_progress and total:
                    on_progress(min(100.0, sent * 100.0 / total))

        headers = {"Content-Type": asset.content_type}
        if total:
            headers["Content-Length"] = str(total)
        try:
            response = await self.http.put(
                write_url,
                content=body(),
                headers=headers,
                timeout=httpx.Timeout(UPLOAD_TIMEOUT_S),
            )
        except httpx.HTTPError as e:
            raise UploadError(f"Upload failed: {e}") from e
        if response.status_code >= 400:
            raise UploadError(f"Upload failed: {response.text or response.reason_phrase}", response.status_code)
        if on_progress:
            on_progress(100.0)

    @log_and_time("Convert")
    async def convert(self, key: str) -> ConvertResult:
        try:
            response = await self.http.post(
                self._url("convert"),
                json={"key": key},
                headers=self._auth_headers(),
                timeout=httpx.Timeout(UPLOAD_TIMEOUT_S),
            )
        except httpx.HTTPError as e:
            raise ConversionError(f"Conversion request failed: {e}") from e
        if response.status_code >= 400:
            raise ConversionError(response.text or "Conversion failed", response.status_code)
        data = _json_body(response, ConversionError, "Convert")
        return ConvertResult(
            success=bool(data.get("success")),
            url=data.get("downloadUrl"),
            key=data.get("convertedKey"),
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @log_and_time("Create Task")
    async def create_task(self, request: TaskRequest) -> str:
        try:
            response = await self.http.post(
                self._url("tasks"),
                json=request.to_body(),
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise TaskCreationError(f"Task request failed: {e}") from e
        if response.status_code >= 400:
            raise TaskCreationError(response.text or "Failed to create task", response.status_code)

        data = _json_body(response, TaskCreationError, "Create task")
        task = data.get("task") if isinstance(data.get("task"), dict) else data
        task_id = task.get("id")
        if not task_id:
            raise TaskCreationError("Task response missing id")
        logger.info(f"[TASK] Created {request.task_type.value} task {task_id}")
        return str(task_id)

    # ------------------------------------------------------------------
    # Vision (swing scoring)
    # ------------------------------------------------------------------

    async def stream_vision_analysis(
        self,
        metadata: Dict[str, Any],
        video_url: Optional[str] = None,
        asset: Optional[VideoAsset] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield newline-delimited JSON status updates from the vision service."""
        if not video_url and (asset is None or not asset.is_local):
            raise VisionAnalysisError("No video file or videoUrl provided", 400)

        data = {"metadata": json.dumps(metadata)}
        files = None
        payload = None
        if video_url:
            data["videoUrl"] = video_url
        else:
            try:
                payload = await asset.open_for_upload()
            except OSError as e:
                raise VisionAnalysisError(f"Could not read video: {e}") from e
            # httpx streams a file object in chunks
            files = {"file": (asset.filename or "video.mp4", payload, asset.content_type)}

        try:
            async with self.http.stream(
                "POST",
                self._url("vision"),
                data=data,
                files=files,
                headers=self._auth_headers(),
                timeout=httpx.Timeout(API_TIMEOUT_S, read=STREAM_TIMEOUT_S),
            ) as response:
                if response.status_code >= 400:
                    text = await _error_text(response)
                    raise VisionAnalysisError(text or "Vision analysis failed", response.status_code)
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        update = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(f"[VISION] Skipping non-JSON line: {line[:80]}")
                        continue
                    if isinstance(update, dict):
                        yield update
        except httpx.HTTPError as e:
            raise VisionAnalysisError(f"Vision request failed: {e}") from e
        except OSError as e:
            raise VisionAnalysisError(f"Could not read video: {e}") from e
        finally:
            if payload is not None and not isinstance(payload, bytes):
                payload.close()
