"""Combine chunk outputs into the final artifact."""

import asyncio
import logging
import os
import shutil
import tempfile
from typing import Protocol

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import RenderfleetError, StitchFailedError
from renderfleet.services.storage_service import ArtifactStore

logger = logging.getLogger(__name__)


class Stitcher(Protocol):
    async def stitch(self, chunk_refs: list[str], output_key: str, *, region: str | None = None) -> str:
        """Combine ``chunk_refs`` in the given order and return the output ref."""
        ...


class FFmpegConcatStitcher:
    """Stitch chunk files with the FFmpeg concat demuxer.

    Chunks are rendered with identical encoder settings, so they are joined
    with ``-c copy`` (no re-encoding).
    """

    def __init__(self, store: ArtifactStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    async def stitch(self, chunk_refs: list[str], output_key: str, *, region: str | None = None) -> str:
        if not chunk_refs:
            raise StitchFailedError("No chunk outputs to stitch")

        work_dir = tempfile.mkdtemp(prefix="renderfleet_stitch_")
        try:
            chunk_files = []
            for i, ref in enumerate(chunk_refs):
                local_path = os.path.join(work_dir, f"chunk_{i:05d}{os.path.splitext(ref)[1]}")
                try:
                    await asyncio.to_thread(self.store.download_file, ref, local_path, region=region)
                except RenderfleetError as e:
                    raise StitchFailedError(f"Could not fetch chunk output {ref}: {e.message}") from e
                chunk_files.append(local_path)

            output_path = os.path.join(work_dir, "out" + os.path.splitext(output_key)[1])
            await self._concatenate(chunk_files, output_path, work_dir)

            try:
                await asyncio.to_thread(self.store.upload_file, output_path, output_key, region=region)
            except RenderfleetError as e:
                raise StitchFailedError(f"Could not upload stitched output: {e.message}") from e
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"[STITCH] Wrote {output_key} from {len(chunk_refs)} chunks")
        return output_key

    async def _concatenate(self, chunk_files: list[str], output_path: str, work_dir: str) -> None:
        if len(chunk_files) == 1:
            shutil.copy2(chunk_files[0], output_path)
            return

        concat_list_path = os.path.join(work_dir, "concat_list.txt")
        with open(concat_list_path, "w") as f:
            for chunk_file in chunk_files:
                # FFmpeg concat requires escaped paths
                escaped = chunk_file.replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")

        cmd = [
            self.settings.ffmpeg_path,
            "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", concat_list_path,
            "-c", "copy",
            "-movflags", "+faststart",
            output_path,
        ]
        logger.info(f"[STITCH] Concatenation command: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StitchFailedError(f"Could not start ffmpeg: {e}") from e
        _, stderr = await proc.communicate()

        if proc.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace")
            logger.error(f"[STITCH] Concatenation failed: {stderr_text}")
            raise StitchFailedError(
                "Chunk concatenation failed",
                details={"stderr": stderr_text[-2000:]},
            )
