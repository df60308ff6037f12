"""Tests for the FFmpeg concat stitcher.

FFmpeg itself is not required: the ffmpeg path is pointed at stand-in
binaries to exercise the failure paths.
"""

import pytest

from renderfleet.exceptions import StitchFailedError
from renderfleet.render.stitcher import FFmpegConcatStitcher


class TestFFmpegConcatStitcher:
    """Tests for FFmpegConcatStitcher."""

    @pytest.mark.asyncio
    async def test_single_chunk_is_copied(self, settings, local_store):
        local_store.put_object("renders/j/chunks/00000-a.mp4", b"only")

        ref = await FFmpegConcatStitcher(local_store, settings).stitch(
            ["renders/j/chunks/00000-a.mp4"], "renders/j/out.mp4"
        )

        assert ref == "renders/j/out.mp4"
        assert local_store.get_object(ref) == b"only"

    @pytest.mark.asyncio
    async def test_missing_chunk(self, settings, local_store):
        with pytest.raises(StitchFailedError) as exc_info:
            await FFmpegConcatStitcher(local_store, settings).stitch(["renders/j/chunks/gone.mp4"], "renders/j/out.mp4")
        assert "gone.mp4" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_no_chunks(self, settings, local_store):
        with pytest.raises(StitchFailedError):
            await FFmpegConcatStitcher(local_store, settings).stitch([], "renders/j/out.mp4")

    @pytest.mark.asyncio
    async def test_muxer_failure(self, settings, local_store):
        settings.ffmpeg_path = "false"
        for i in range(2):
            local_store.put_object(f"renders/j/chunks/{i:05d}-a.mp4", b"x")

        with pytest.raises(StitchFailedError) as exc_info:
            await FFmpegConcatStitcher(local_store, settings).stitch(
                ["renders/j/chunks/00000-a.mp4", "renders/j/chunks/00001-a.mp4"], "renders/j/out.mp4"
            )

        assert exc_info.value.message == "Chunk concatenation failed"
        assert not local_store.object_exists("renders/j/out.mp4")

    @pytest.mark.asyncio
    async def test_missing_ffmpeg(self, settings, local_store):
        settings.ffmpeg_path = "/nonexistent/ffmpeg"
        for i in range(2):
            local_store.put_object(f"renders/j/chunks/{i:05d}-a.mp4", b"x")

        with pytest.raises(StitchFailedError) as exc_info:
            await FFmpegConcatStitcher(local_store, settings).stitch(
                ["renders/j/chunks/00000-a.mp4", "renders/j/chunks/00001-a.mp4"], "renders/j/out.mp4"
            )

        assert "Could not start ffmpeg" in exc_info.value.message
