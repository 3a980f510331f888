"""
Figure and video rendering for planned node media slots.

Planned LearningNodeFigure/LearningNodeVideo rows carry a plan_json with a
prompt. Rendering generates the bytes with the LLM client, uploads them to the
blob store and marks the row ``rendered`` with its public URL. The node docs
themselves are never touched here; the doc builder picks rendered assets up.

Generation failures mark the row ``failed`` and the stage continues. An upload
failure aborts the stage with AssetUploadError.
"""
from __future__ import annotations

import io
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional, Union
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from src.core.clients import BlobStore, GeneratedMedia, LLMClient
from src.core.errors import AssetUploadError, MissingDependencyError, NotFoundError
from src.db.models import DocGenerationRun, LearningNodeFigure, LearningNodeVideo, PathNode, utcnow
from src.generation.prompts import figure_prompt, video_prompt

BLOB_CATEGORY = "material"
FIGURE_PROMPT_VERSION = "figure_asset_v1@1"
VIDEO_PROMPT_VERSION = "video_asset_v1@1"
MAX_ERROR_CHARS = 900

MediaRow = Union[LearningNodeFigure, LearningNodeVideo]


@dataclass
class MediaRenderResult:
    path_id: Optional[UUID] = None
    figures_rendered: int = 0
    figures_existing: int = 0
    figures_failed: int = 0
    videos_rendered: int = 0
    videos_existing: int = 0
    videos_failed: int = 0


def _needs_render(row: MediaRow) -> bool:
    status = (row.status or "").strip().lower()
    if row.slot <= 0 or status not in ("planned", "rendered"):
        return False
    return not (row.asset_url or "").strip()


class MediaRenderer:
    """
    Render planned figures and videos for a path.

    Example:
        >>> renderer = MediaRenderer(session, llm, blob_store)
        >>> result = renderer.render_path(user_id, path_id)
        >>> result.figures_rendered
        3
    """

    def __init__(self, db_session: Session, llm: LLMClient, blob_store: Optional[BlobStore]):
        if llm is None:
            raise MissingDependencyError("media_render: missing llm client")
        if blob_store is None:
            raise MissingDependencyError("media_render: missing blob store")
        self.db = db_session
        self.llm = llm
        self.blob_store = blob_store
        self.settings = get_settings()

    def render_path(self, owner_user_id: UUID, path_id: UUID) -> MediaRenderResult:
        """
        Render every planned figure and video slot on the path's nodes.

        Raises:
            NotFoundError: The path has no nodes
            AssetUploadError: An asset could not be uploaded
        """
        result = MediaRenderResult(path_id=path_id)
        node_ids = list(self.db.scalars(select(PathNode.id).where(PathNode.path_id == path_id)).all())
        if not node_ids:
            raise NotFoundError(f"media_render: no path nodes for path {path_id}")

        for model, kind in ((LearningNodeFigure, "figure"), (LearningNodeVideo, "video")):
            rows = self.db.scalars(
                select(model).where(model.path_node_id.in_(node_ids)).order_by(model.path_node_id, model.slot)
            ).all()
            work = []
            for r in rows:
                if _needs_render(r):
                    work.append(r)
                elif (r.asset_url or "").strip():
                    setattr(result, f"{kind}s_existing", getattr(result, f"{kind}s_existing") + 1)
            if kind == "video":
                work = self._limit_per_node(work, max(self.settings.node_videos_render_limit, 0))
            if not work:
                continue
            logger.info(f"Rendering {len(work)} {kind}s for path {path_id}")
            rendered, failed = self._render_rows(owner_user_id, path_id, kind, work)
            setattr(result, f"{kind}s_rendered", rendered)
            setattr(result, f"{kind}s_failed", failed)

        logger.info(
            f"Media for path {path_id}: figures={result.figures_rendered} "
            f"videos={result.videos_rendered} failed={result.figures_failed + result.videos_failed}"
        )
        return result

    @staticmethod
    def _limit_per_node(rows: list[MediaRow], limit: int) -> list[MediaRow]:
        counts: dict[UUID, int] = {}
        out = []
        for r in rows:
            if counts.get(r.path_node_id, 0) >= limit:
                continue
            counts[r.path_node_id] = counts.get(r.path_node_id, 0) + 1
            out.append(r)
        return out

    def _generate(self, kind: str, plan: dict[str, Any]) -> GeneratedMedia:
        if kind == "figure":
            return self.llm.generate_image(figure_prompt(plan))
        return self.llm.generate_video(video_prompt(plan), duration_sec=self.settings.video_duration_sec)

    def _render_rows(self, owner_user_id: UUID, path_id: UUID, kind: str, rows: list[MediaRow]) -> tuple[int, int]:
        jobs = []
        for r in rows:
            plan = r.plan_json if isinstance(r.plan_json, dict) else {}
            if not str(plan.get("prompt") or plan.get("caption") or "").strip():
                self._mark_failed(owner_user_id, path_id, kind, r, "empty_prompt", 0)
                continue
            jobs.append((r, plan))

        def generate(job: tuple[MediaRow, dict[str, Any]]) -> tuple[Optional[GeneratedMedia], str, int]:
            start = time.monotonic()
            try:
                media = self._generate(kind, job[1])
            except Exception as e:  # one bad prompt must not stop the other slots
                return None, f"{kind}_generate_failed: {e}", int((time.monotonic() - start) * 1000)
            return media, "", int((time.monotonic() - start) * 1000)

        failed = len(rows) - len(jobs)
        rendered = 0
        workers = max(1, min(self.settings.media_render_concurrency, 4, len(jobs) or 1))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            outputs = list(executor.map(generate, jobs))

        # Uploads and row updates stay on the session's thread.
        for (row, _plan), (media, err, latency) in zip(jobs, outputs):
            if media is None or not media.data:
                self._mark_failed(owner_user_id, path_id, kind, row, err or f"{kind}_generate_empty", latency)
                failed += 1
                continue
            self._store(owner_user_id, path_id, kind, row, media, latency)
            rendered += 1
        return rendered, failed

    def _store(
        self, owner_user_id: UUID, path_id: UUID, kind: str, row: MediaRow, media: GeneratedMedia, latency: int
    ) -> None:
        ext = "png" if kind == "figure" else "mp4"
        key = f"generated/node_{kind}s/{path_id}/{row.path_node_id}/slot_{row.slot}_{(row.prompt_hash or '').strip()}.{ext}"
        try:
            self.blob_store.upload_file(BLOB_CATEGORY, key, io.BytesIO(media.data))
            url = self.blob_store.get_public_url(BLOB_CATEGORY, key)
        except Exception as e:
            self._mark_failed(owner_user_id, path_id, kind, row, f"upload_failed: {e}", latency)
            raise AssetUploadError(f"media_render: upload failed for {kind} slot {row.slot}: {e}") from e

        row.status = "rendered"
        row.asset_storage_key = key
        row.asset_url = url
        row.asset_mime_type = (row.asset_mime_type or "").strip() or (media.mime_type or "").strip() or (
            "image/png" if kind == "figure" else "video/mp4"
        )
        row.error = ""
        row.updated_at = utcnow()
        self._record_run(
            owner_user_id, path_id, kind, row, "succeeded", latency, [],
            {"storage_key": key, "url": url, "byte_len": len(media.data)},
        )
        self.db.flush()
        logger.debug(f"Rendered {kind} slot {row.slot} for node {row.path_node_id}")

    def _mark_failed(
        self, owner_user_id: UUID, path_id: UUID, kind: str, row: MediaRow, message: str, latency: int
    ) -> None:
        message = message.strip()[:MAX_ERROR_CHARS]
        row.status = "failed"
        row.error = message
        row.updated_at = utcnow()
        self._record_run(owner_user_id, path_id, kind, row, "failed", latency, [message], {})
        self.db.flush()
        logger.warning(f"{kind.capitalize()} slot {row.slot} for node {row.path_node_id} failed: {message}")

    def _record_run(
        self,
        owner_user_id: UUID,
        path_id: UUID,
        kind: str,
        row: MediaRow,
        status: str,
        latency: int,
        errors: list[str],
        metrics: dict[str, Any],
    ) -> None:
        self.db.add(
            DocGenerationRun(
                user_id=owner_user_id,
                path_id=path_id,
                path_node_id=row.path_node_id,
                artifact_kind=f"node_{kind}_asset",
                attempt=1,
                status=status,
                model=self.settings.openai_image_model if kind == "figure" else self.settings.openai_video_model,
                prompt_version=FIGURE_PROMPT_VERSION if kind == "figure" else VIDEO_PROMPT_VERSION,
                errors=errors,
                metrics=metrics,
                latency_ms=latency,
            )
        )
