# services/processing_service.py
"""
Orchestrates single and batch enhancement runs.

Database work (preset resolution, watermark lookup, image records) stays on the
calling thread; blob reads/writes and pixel work run inside the pipeline call,
which is what the batch worker pool executes.
"""
import json
import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import MAX_BATCH_SIZE, MAX_CONCURRENT_PROCESSING
from db import crud
from models import models as db_models
from schemas import image_schemas
from schemas.processing_schemas import AutoProcessRequest
from schemas.settings_schemas import ManualAdjustments, Settings, merge_settings
from services.exceptions import DependencyFailureError, ImageProcessingError, InvalidInputError
from services.image_processing import EnhancementPipeline, ProcessingResult
from services.notices import Notice, NoticeSink, log_notice
from services.output_encoder import FILE_EXTENSIONS
from services.presets import AUTO_DEFAULTS, PresetResolver, SqlPresetStore
from services.storage_service import StorageService
from services.watermark import WatermarkLoader, WatermarkService

logger = logging.getLogger(__name__)

Params = Union[Settings, ManualAdjustments]


@dataclass(frozen=True)
class SourceImage:
    """Plain copy of the columns workers need; ORM rows stay on the request thread."""
    id: uuid.UUID
    user_id: uuid.UUID
    original_name: str
    storage_key: str

    @classmethod
    def from_record(cls, record: db_models.Image) -> "SourceImage":
        return cls(id=record.id, user_id=record.user_id, original_name=record.original_name, storage_key=record.storage_key)


@dataclass
class StoredOutput:
    """A successful run whose bytes are already in the blob store."""
    result: ProcessingResult
    storage_key: str
    url: str
    name: str


def processed_name(original_name: str, output_format: str) -> str:
    stem = os.path.splitext(original_name)[0] or "image"
    return f"{stem}-processed.{FILE_EXTENSIONS.get(output_format, output_format)}"


class ProcessingService:
    def __init__(
        self,
        db: Session,
        storage: StorageService,
        pipeline: Optional[EnhancementPipeline] = None,
        notify: NoticeSink = log_notice,
        max_workers: int = MAX_CONCURRENT_PROCESSING,
    ):
        self.db = db
        self.storage = storage
        self.notify = notify
        self.pipeline = pipeline or EnhancementPipeline(notify=notify)
        self.max_workers = max(1, max_workers)

    # --- Parameter resolution (request thread) ---

    def resolve_auto_settings(self, request: AutoProcessRequest, user_id: uuid.UUID) -> Settings:
        """defaults <- preset <- request overrides"""
        resolver = PresetResolver(SqlPresetStore(self.db), notify=self.notify)
        preset = resolver.resolve(request.preset, user_id)
        return merge_settings(AUTO_DEFAULTS, preset, request.overrides())

    @staticmethod
    def wants_watermark(params: Params) -> bool:
        if isinstance(params, ManualAdjustments):
            return bool(params.watermark_enabled)
        return bool(params.watermark is not None and params.watermark.enabled)

    def watermark_loader(self, params: Params, user_id: uuid.UUID) -> Optional[WatermarkLoader]:
        if not self.wants_watermark(params):
            return None
        return WatermarkService(self.db, self.storage, notify=self.notify).loader_for(user_id)

    # --- Worker side ---

    def run(self, storage_key: str, params: Params, mode: str, loader: Optional[WatermarkLoader]) -> ProcessingResult:
        """Fetches the source blob and runs the pipeline. Blob store errors propagate."""
        image_bytes = self.storage.get(storage_key)
        return self.pipeline.process(image_bytes, params, mode, watermark_loader=loader)

    def run_and_store(self, source: SourceImage, params: Params, mode: str, loader: Optional[WatermarkLoader]) -> Union[StoredOutput, ProcessingResult]:
        result = self.run(source.storage_key, params, mode, loader)
        if not result.success:
            return result
        name = processed_name(source.original_name, result.format)
        key = f"processed/{source.user_id}/{uuid.uuid4()}.{FILE_EXTENSIONS[result.format]}"
        url = self.storage.put(result.data, key, result.content_type)
        return StoredOutput(result=result, storage_key=key, url=url, name=name)

    # --- Request thread ---

    def _record_output(self, source: SourceImage, output: StoredOutput, mode: str, user_id: uuid.UUID) -> db_models.Image:
        result = output.result
        image_in = image_schemas.ImageCreate(
            original_name=output.name,
            storage_key=output.storage_key,
            url=output.url,
            size=len(result.data),
            width=result.width,
            height=result.height,
            mime_type=result.content_type,
            parent_image_id=source.id,
            processing_type=mode,
            processing_settings_json=json.dumps(result.applied_settings or {}),
            is_processed=True,
        )
        return crud.create_image(self.db, image=image_in, user_id=user_id)

    def _record_or_discard(self, source: SourceImage, output: StoredOutput, mode: str, user_id: uuid.UUID) -> db_models.Image:
        """Records the stored output; on a database failure the blob is deleted again."""
        try:
            return self._record_output(source, output, mode, user_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            self._discard(output.storage_key)
            raise DependencyFailureError(f"Could not record processed image: {e}") from e

    def process_single(
        self,
        source: db_models.Image,
        params: Params,
        mode: str,
        user_id: uuid.UUID,
        preview: bool = False,
    ) -> Tuple[ProcessingResult, Optional[db_models.Image]]:
        """
        Processes one image. With preview the encoded bytes are returned in the
        result and nothing is stored; otherwise the output is uploaded and recorded.
        """
        loader = self.watermark_loader(params, user_id)
        source = SourceImage.from_record(source)
        if preview:
            return self.run(source.storage_key, params, mode, loader), None

        outcome = self.run_and_store(source, params, mode, loader)
        if isinstance(outcome, ProcessingResult):
            return outcome, None
        record = self._record_or_discard(source, outcome, mode, user_id)
        logger.info(f"Stored {mode} output {record.id} for image {source.id}")
        return outcome.result, record

    def process_auto(self, source: db_models.Image, request: AutoProcessRequest, user_id: uuid.UUID, preview: bool = False):
        settings = self.resolve_auto_settings(request, user_id)
        return self.process_single(source, settings, "auto", user_id, preview=preview)

    def process_manual(self, source: db_models.Image, adjustments: ManualAdjustments, user_id: uuid.UUID, preview: bool = False):
        return self.process_single(source, adjustments, "manual", user_id, preview=preview)

    def process_batch(self, image_ids: List[uuid.UUID], mode: str, options: Dict, user_id: uuid.UUID) -> Dict[str, List[dict]]:
        """
        Runs every image independently on a bounded worker pool.
        One image failing never affects the others; results are unordered.
        """
        if len(image_ids) > MAX_BATCH_SIZE:
            raise InvalidInputError(f"A batch may contain at most {MAX_BATCH_SIZE} images")
        try:
            if mode == "auto":
                request = AutoProcessRequest.model_validate(options or {})
            elif mode == "manual":
                adjustments = ManualAdjustments.model_validate(options or {})
            else:
                raise InvalidInputError(f"Invalid processing mode '{mode}', must be 'auto' or 'manual'")
        except ValidationError as e:
            raise InvalidInputError(f"Invalid processing options: {e}") from e

        images = {image.id: image for image in crud.get_user_images_by_ids(self.db, image_ids=image_ids, user_id=user_id)}
        results: Dict[str, List[dict]] = {"success": [], "failed": []}
        shared_loader: Optional[WatermarkLoader] = None

        jobs = []
        for image_id in dict.fromkeys(image_ids):
            source = images.get(image_id)
            if source is None:
                results["failed"].append({"id": image_id, "name": None, "error": "Image not found or access denied", "error_type": "not_found"})
                continue
            try:
                # A user preset is resolved, and counted, once per image
                params = self.resolve_auto_settings(request, user_id) if mode == "auto" else adjustments
            except ImageProcessingError as e:
                results["failed"].append({"id": source.id, "name": source.original_name, "error": str(e), "error_type": e.error_type})
                continue
            loader = None
            if self.wants_watermark(params):
                # Loaded once for the whole batch
                if shared_loader is None:
                    shared_loader = self.watermark_loader(params, user_id)
                loader = shared_loader
            jobs.append((SourceImage.from_record(source), params, loader))

        logger.info(f"Batch of {len(jobs)} image(s) for user {user_id} in {mode} mode, {self.max_workers} worker(s)")
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.run_and_store, source, params, mode, loader): source
                for source, params, loader in jobs
            }
            for future in as_completed(futures):
                source = futures[future]
                try:
                    outcome = future.result()
                except ImageProcessingError as e:
                    results["failed"].append({"id": source.id, "name": source.original_name, "error": str(e), "error_type": e.error_type})
                    continue
                except Exception as e:
                    logger.error(f"Unexpected error processing image {source.id} in batch: {e}", exc_info=True)
                    results["failed"].append({"id": source.id, "name": source.original_name, "error": str(e), "error_type": ImageProcessingError.error_type})
                    continue

                if isinstance(outcome, ProcessingResult):
                    results["failed"].append({"id": source.id, "name": source.original_name, "error": outcome.error, "error_type": outcome.error_type})
                    continue
                try:
                    record = self._record_or_discard(source, outcome, mode, user_id)
                except DependencyFailureError as e:
                    results["failed"].append({"id": source.id, "name": source.original_name, "error": str(e), "error_type": e.error_type})
                    continue
                results["success"].append({"id": record.id, "original_id": source.id, "name": record.original_name, "url": record.url})

        logger.info(f"Batch complete for user {user_id}: {len(results['success'])} succeeded, {len(results['failed'])} failed")
        return results

    def _discard(self, key: str) -> None:
        try:
            self.storage.delete(key)
        except Exception as e:
            self.notify(Notice(
                kind="orphaned_blob",
                message=f"Could not delete unrecorded output {key}: {e}",
                detail={"storage_key": key},
            ))
