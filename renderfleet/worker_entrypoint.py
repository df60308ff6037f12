"""Render worker for Cloud Run.

Serves ``/health`` and ``/render-chunk``: renders one chunk's frame range
with the configured renderer command and writes the result to the output
key the orchestrator chose. The worker never retries; the orchestrator does.
"""

import asyncio
import json
import logging
import os
import shlex
import shutil
import tempfile
import time

from fastapi import FastAPI

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import RenderfleetError
from renderfleet.render.chunking import ChunkRange
from renderfleet.schemas.render import ChunkInvocationRequest, ChunkInvocationResponse
from renderfleet.services.storage_service import ArtifactStore, get_storage_service

logger = logging.getLogger(__name__)


class ChunkRenderError(Exception):
    pass


class ChunkRenderer:
    def __init__(self, store: ArtifactStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    def build_command(self, request: ChunkInvocationRequest, output_path: str, props_path: str) -> list[str]:
        start_frame, end_frame = ChunkRange(request.chunk_index, request.start_ms, request.end_ms).frame_range(
            request.fps
        )
        command = self.settings.chunk_render_command.format(
            serve_url=shlex.quote(request.site_ref),
            composition=shlex.quote(request.composition),
            output_path=shlex.quote(output_path),
            props_path=shlex.quote(props_path),
            start_frame=start_frame,
            end_frame=end_frame,
        )
        return shlex.split(command)

    async def _run(self, cmd: list[str]) -> None:
        logger.info(f"[WORKER] Render command: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ChunkRenderError(f"Could not start renderer: {e}") from e
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace")
            logger.error(f"[WORKER] Render failed: {stderr_text}")
            raise ChunkRenderError(f"Renderer exited with {proc.returncode}: {stderr_text[-1000:]}")

    async def render(self, request: ChunkInvocationRequest) -> ChunkInvocationResponse:
        started = time.monotonic()
        work_dir = tempfile.mkdtemp(prefix=f"renderfleet_{request.job_id}_chunk{request.chunk_index}_")
        try:
            props_path = os.path.join(work_dir, "props.json")
            with open(props_path, "w") as f:
                json.dump(request.input_props, f)
            output_path = os.path.join(work_dir, "chunk" + os.path.splitext(request.output_key)[1])

            await self._run(self.build_command(request, output_path, props_path))
            await asyncio.to_thread(self.store.upload_file, output_path, request.output_key)
        except (ChunkRenderError, RenderfleetError) as e:
            return ChunkInvocationResponse(
                success=False,
                error_detail=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"[WORKER] Job {request.job_id} chunk {request.chunk_index} -> {request.output_key}")
        return ChunkInvocationResponse(
            success=True,
            output_ref=request.output_key,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


def create_worker_app(renderer: ChunkRenderer | None = None) -> FastAPI:
    app = FastAPI(title="renderfleet worker")
    app.state.renderer = renderer

    def get_renderer() -> ChunkRenderer:
        if app.state.renderer is None:
            app.state.renderer = ChunkRenderer(get_storage_service())
        return app.state.renderer

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.post("/render-chunk", response_model=ChunkInvocationResponse)
    async def render_chunk(request: ChunkInvocationRequest) -> ChunkInvocationResponse:
        logger.info(
            f"[WORKER] Job {request.job_id} chunk {request.chunk_index} "
            f"[{request.start_ms}, {request.end_ms}) attempt {request.attempt}"
        )
        return await get_renderer().render(request)

    return app


app = create_worker_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 8080)))
