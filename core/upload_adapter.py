"""
# core/upload_adapter.py

Module Contract
- Purpose: Move a local video to storage and return a stable remote reference, converting formats the analysis model cannot read.
- Inputs:
  - PipelineRun with a local VideoAsset, its media message id and the assistant placeholder id
- Outputs:
  - upload(run) -> UploadResult(url, key, converted)
- Behavior:
  - upload slot -> PUT with per-chunk progress -> optional conversion (best effort, silent fallback)
  - Every reference change is written onto the media message (video_ref, video_key, preview_handle=None).
- Error handling:
  - AnalysisCancelled at any await; UploadError for slot/transfer failures; ConversionError never escapes.
"""
from dataclasses import dataclass
from typing import Optional

from config.app_config import CONVERTING_MESSAGE
from core.conversation import ProgressStage
from core.coordinator import PipelineRun
from core.errors import ServiceError, UploadError
from services.service_client import ServiceClient
from utils.logging_utils import get_logger, log_and_time

logger = get_logger("upload_adapter")


@dataclass
class UploadResult:
    url: str
    key: str
    converted: bool = False


class UploadAdapter:
    def __init__(self, service: ServiceClient):
        self.service = service

    async def _record_reference(self, run: PipelineRun, url: str, key: str) -> None:
        if run.media_message_id:
            await run.writer.update(run.media_message_id, video_ref=url, video_key=key, preview_handle=None)

    @log_and_time("Upload Video")
    async def upload(self, run: PipelineRun) -> UploadResult:
        video = run.video
        if video is None or not video.is_local:
            raise UploadError("No local video to upload")

        token = run.token
        filename = video.filename or "video.mp4"
        logger.info(f"[UPLOAD] {filename} ({video.size_mb:.1f} MB, {video.content_type})")

        run.set_stage(ProgressStage.UPLOADING)
        run.report_upload(0)
        slot = await token.run(self.service.request_upload_slot(filename, video.content_type))
        try:
            await token.run(self.service.put_bytes(slot.write_url, video, on_progress=run.report_upload))
        except OSError as e:
            raise UploadError(f"Could not read video: {e}") from e

        result = UploadResult(url=slot.read_url, key=slot.key)
        await self._record_reference(run, result.url, result.key)
        logger.info(f"[UPLOAD] Stored as {result.key}")

        if video.needs_conversion:
            converted = await self._convert(run, result.key)
            if converted is not None:
                result = converted
                await self._record_reference(run, result.url, result.key)

        run.video_url = result.url
        return result

    async def _convert(self, run: PipelineRun, key: str) -> Optional[UploadResult]:
        run.set_stage(ProgressStage.PROCESSING)
        if run.assistant_id:
            await run.writer.update(run.assistant_id, content=CONVERTING_MESSAGE, streaming=True)
        try:
            response = await run.token.run(self.service.convert(key))
            if response.success and response.url:
                logger.info(f"[CONVERT] {key} -> {response.key}")
                return UploadResult(url=response.url, key=response.key or key, converted=True)
            logger.warning(f"[CONVERT] Service declined {key}; using original upload")
        except ServiceError as e:
            logger.warning(f"[CONVERT] Failed for {key}, using original upload: {type(e).__name__}: {e}")
        finally:
            if run.assistant_id:
                await run.writer.update(run.assistant_id, content="", streaming=True)
        return None
