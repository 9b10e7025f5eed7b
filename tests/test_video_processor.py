"""Tests for per-frame video helpers. ffmpeg itself is never invoked."""

import subprocess
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from bitdither_lib import BitmapDitherer, DitherSettings, ScaleParameters
import video_processor
from video_processor import FRAME_RETRIES, VideoProcessor, _process_single_frame


def _frame(value, size=(8, 6)):
    return np.full((size[1], size[0], 4), value, dtype=np.uint8)


class TestIterFrames:
    def test_frames_are_independent(self):
        ditherer = BitmapDitherer()
        frames = [_frame(90), _frame(200), _frame(90)]
        out = list(VideoProcessor.iter_frames(frames, ditherer))
        assert len(out) == 3
        np.testing.assert_array_equal(out[0], out[2])
        assert not np.array_equal(out[0], out[1])

    def test_is_lazy(self):
        calls = []

        def frames():
            for value in (10, 20):
                calls.append(value)
                yield _frame(value)

        stream = VideoProcessor.iter_frames(frames(), BitmapDitherer())
        assert calls == []
        next(stream)
        assert calls == [10]


class TestSingleFrame:
    def test_dithers_in_place(self, tmp_path):
        path = tmp_path / "frame_00001.png"
        Image.new('RGB', (8, 6), (128, 128, 128)).save(path)
        settings = DitherSettings(scale=ScaleParameters(scale_percent=50))
        assert _process_single_frame(path, BitmapDitherer(settings), final_resize_multiplier=2)
        with Image.open(path) as result:
            assert result.mode == 'RGB'
            assert result.size == (8, 6)
            assert set(np.unique(np.array(result))) <= {0, 255}

    def test_unreadable_frame_reports_failure(self, tmp_path):
        path = tmp_path / "frame_00001.png"
        path.write_bytes(b"not an image")
        assert not _process_single_frame(path, BitmapDitherer())


class TestFixFailedFrames:
    def _frames(self, tmp_path, count):
        paths = []
        for i in range(count):
            path = tmp_path / f"frame_{i:05d}.png"
            Image.new('L', (2, 2), i * 10).save(path)
            paths.append(path)
        return paths

    def test_copies_previous_good_frame(self, tmp_path):
        frames = self._frames(tmp_path, 4)
        VideoProcessor(num_workers=1)._fix_failed_frames([frames[2]], frames)
        assert frames[2].read_bytes() == frames[1].read_bytes()

    def test_falls_forward_when_no_previous(self, tmp_path):
        frames = self._frames(tmp_path, 3)
        VideoProcessor(num_workers=1)._fix_failed_frames([frames[0], frames[1]], frames)
        assert frames[0].read_bytes() == frames[2].read_bytes()
        assert frames[1].read_bytes() == frames[2].read_bytes()


class TestVideoInfo:
    def test_parses_ffprobe_output(self, monkeypatch):
        def fake_run(cmd, **kwargs):
            out = "width=640\nheight=360\nr_frame_rate=24/1\nduration=2.5\nnb_frames=N/A\n"
            return subprocess.CompletedProcess(cmd, 0, stdout=out, stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        info = VideoProcessor(num_workers=1).get_video_info("clip.mp4")
        assert info['width'] == 640
        assert info['height'] == 360
        assert info['fps'] == 24.0
        assert info['frame_count'] == 60

    def test_falls_back_without_ffprobe(self, monkeypatch):
        def missing(*args, **kwargs):
            raise FileNotFoundError("ffprobe")

        monkeypatch.setattr(subprocess, "run", missing)
        info = VideoProcessor(num_workers=1).get_video_info("clip.mp4")
        assert info == {'fps': 30.0, 'width': 0, 'height': 0, 'duration': None, 'frame_count': None}

    def test_streaming_reports_failure(self, tmp_path, monkeypatch):
        def missing(*args, **kwargs):
            raise FileNotFoundError("ffmpeg")

        messages = []
        monkeypatch.setattr(subprocess, "run", missing)
        processor = VideoProcessor(num_workers=1, progress_callback=lambda f, m: messages.append(m))
        assert not processor.process_video_streaming("clip.mp4", str(tmp_path / "out.mp4"), BitmapDitherer())
        assert messages[-1].startswith("Error:")


class _SerialPool:
    """Stands in for multiprocessing.Pool; runs map in this process."""

    def __init__(self, processes=None):
        self.processes = processes

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def map(self, func, items):
        return [func(item) for item in items]


class TestDitherBatches:
    def test_retries_then_reports_failed_frames(self, monkeypatch):
        monkeypatch.setattr(video_processor, "Pool", _SerialPool)
        frames = [Path(f"frame_{i:05d}.png") for i in range(5)]
        calls = {}

        def process(frame):
            calls[frame] = calls.get(frame, 0) + 1
            if frame == frames[1]:
                # fails in the pool, succeeds on the first retry
                return calls[frame] > 1
            return frame != frames[3]

        messages = []
        processor = VideoProcessor(num_workers=2, progress_callback=lambda f, m: messages.append((f, m)))
        failed = processor._dither_batches(frames, process, batch_size=2)

        assert failed == [frames[3]]
        assert calls[frames[1]] == 2
        assert calls[frames[3]] == 1 + FRAME_RETRIES
        assert calls[frames[0]] == calls[frames[4]] == 1
        assert [m for _, m in messages] == ["Dithered 2/5 frames", "Dithered 4/5 frames", "Dithered 5/5 frames"]
        assert messages[-1][0] == pytest.approx(0.9)

    def test_clean_run_reports_nothing(self, monkeypatch):
        monkeypatch.setattr(video_processor, "Pool", _SerialPool)
        frames = [Path(f"frame_{i:05d}.png") for i in range(3)]
        assert VideoProcessor(num_workers=1)._dither_batches(frames, lambda frame: True, batch_size=15) == []
