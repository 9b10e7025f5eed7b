"""
Frame-by-frame video dithering through ffmpeg.

Frames are decoded to PNG files, dithered by a worker pool and re-encoded.
Each frame is an independent pipeline run: nothing (error fields, random
state) carries over from one frame to the next.
"""

import logging
import shutil
import subprocess
import tempfile
from functools import partial
from multiprocessing import Pool, cpu_count
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

import numpy as np
from PIL import Image

from bitdither_lib import BitmapDitherer
from utils import upscale_nearest

logger = logging.getLogger('bitdither')

FALLBACK_FPS = 30.0
FRAME_RETRIES = 2


class VideoProcessor:
    """
    Dithers videos in batches of extracted frames using a process pool.
    """

    def __init__(self,
                 num_workers: Optional[int] = None,
                 progress_callback: Optional[Callable[[float, str], None]] = None):
        """
        Args:
            num_workers: Pool size; by default one less than the CPU count, capped at 4
            progress_callback: Called with (fraction 0..1, status message)
        """
        self.num_workers = num_workers or min(4, max(1, cpu_count() - 1))
        self.progress_callback = progress_callback

    def _notify(self, fraction: float, message: str):
        if self.progress_callback:
            self.progress_callback(fraction, message)

    @staticmethod
    def iter_frames(frames: Iterable[np.ndarray], ditherer: BitmapDitherer) -> Iterator[np.ndarray]:
        """
        Lazily dither in-memory frames.

        Args:
            frames: Iterable of (H, W, 3|4) uint8 buffers
            ditherer: Pipeline run on each frame

        Yields:
            Dithered (h, w, 4) buffers, in input order
        """
        for frame in frames:
            yield ditherer.process(frame)

    @staticmethod
    def _nearest_good_frame(index: int, frames: List[Path], bad: set) -> Optional[Path]:
        # earlier frames win over later ones
        candidates = list(reversed(frames[:index])) + frames[index + 1:]
        for candidate in candidates:
            if candidate not in bad and candidate.exists():
                return candidate
        return None

    def _fix_failed_frames(self, failed_frames: List[Path], all_frames: List[Path]):
        """
        Overwrite every failed frame with its nearest good neighbour so the
        encoded video keeps its length and timing.
        """
        bad = set(failed_frames)
        for frame in failed_frames:
            if frame not in all_frames:
                logger.warning(f"{frame.name} is not part of this video")
                continue

            donor = self._nearest_good_frame(all_frames.index(frame), all_frames, bad)
            if donor is None:
                logger.error(f"No usable frame to replace {frame.name}")
                continue
            try:
                shutil.copy2(donor, frame)
                logger.info(f"Replaced {frame.name} with {donor.name}")
            except OSError as e:
                logger.error(f"Could not copy {donor.name} over {frame.name}: {e}")

    def get_video_info(self, video_path: str) -> dict:
        """
        Probe the first video stream with ffprobe.

        Returns:
            dict with fps, width, height, duration and frame_count. Unknown
            values are None (0 for the dimensions); a failed probe yields
            FALLBACK_FPS and nothing else.
        """
        cmd = [
            "ffprobe", "-v", "error", "-select_streams", "v:0",
            "-show_entries", "stream=r_frame_rate,width,height,duration,nb_frames",
            "-of", "default=noprint_wrappers=1",
            video_path
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
            fields = dict(
                (key.strip(), value.strip())
                for key, _, value in (line.partition("=") for line in result.stdout.splitlines())
                if value
            )
            fps = _parse_rate(fields.get("r_frame_rate", ""))
            duration = _parse_number(fields.get("duration"), float)
            frame_count = _parse_number(fields.get("nb_frames"), int)
            if frame_count is None and duration is not None:
                frame_count = int(duration * fps)

            return {
                'fps': fps,
                'width': _parse_number(fields.get("width"), int) or 0,
                'height': _parse_number(fields.get("height"), int) or 0,
                'duration': duration,
                'frame_count': frame_count
            }
        except (OSError, subprocess.CalledProcessError, ValueError, ZeroDivisionError) as e:
            logger.warning(f"ffprobe failed for {video_path}: {e}")
            return {'fps': FALLBACK_FPS, 'width': 0, 'height': 0, 'duration': None, 'frame_count': None}

    def _dither_batches(self, frame_files: List[Path], process_func, batch_size: int) -> List[Path]:
        """Run the pool over the frames batch by batch; returns the frames that kept failing."""
        failed = []
        total = len(frame_files)
        for start in range(0, total, batch_size):
            batch = frame_files[start:start + batch_size]
            with Pool(processes=self.num_workers) as pool:
                results = pool.map(process_func, batch)

            for frame_path, ok in zip(batch, results):
                if ok:
                    continue
                logger.warning(f"Retrying {frame_path.name}")
                if not any(process_func(frame_path) for _ in range(FRAME_RETRIES)):
                    failed.append(frame_path)

            done = min(start + batch_size, total)
            self._notify(0.1 + 0.8 * done / total, f"Dithered {done}/{total} frames")
        return failed

    def process_video_streaming(self,
                                input_path: str,
                                output_path: str,
                                ditherer: BitmapDitherer,
                                final_resize_multiplier: Optional[int] = None,
                                batch_size: int = 15) -> bool:
        """
        Decode, dither and re-encode a video. The source audio track, if any,
        is copied unchanged.

        Args:
            input_path: Source video
            output_path: Encoded H.264 result
            ditherer: Pipeline run on every frame
            final_resize_multiplier: Optional integer block upscale per frame
            batch_size: Frames handed to the pool at a time

        Returns:
            True on success, False if any ffmpeg step failed
        """
        try:
            fps = self.get_video_info(input_path)['fps']
            self._notify(0.0, "Preparing video...")

            with tempfile.TemporaryDirectory() as tmp_dir:
                frame_pattern = str(Path(tmp_dir) / "frame_%05d.png")

                self._notify(0.05, "Decoding frames...")
                subprocess.run(["ffmpeg", "-i", input_path, frame_pattern],
                               stdout=subprocess.DEVNULL,
                               stderr=subprocess.DEVNULL,
                               check=True)

                frame_files = sorted(Path(tmp_dir).glob("frame_*.png"))
                if not frame_files:
                    raise ValueError("ffmpeg produced no frames")
                self._notify(0.1, f"Dithering {len(frame_files)} frames...")

                process_func = partial(_process_single_frame,
                                       ditherer=ditherer,
                                       final_resize_multiplier=final_resize_multiplier)
                failed = self._dither_batches(frame_files, process_func, batch_size)
                if failed:
                    logger.warning(f"{len(failed)} frames failed; patching from neighbours")
                    self._fix_failed_frames(failed, frame_files)

                self._notify(0.9, "Encoding...")
                logger.debug(f"Encoding {len(frame_files)} frames at {fps:.3f} fps")
                # odd dimensions are padded for yuv420p; -frames:v keeps audio from extending the video
                subprocess.run([
                    "ffmpeg", "-y",
                    "-framerate", f"{fps:.5f}",
                    "-i", frame_pattern,
                    "-i", input_path,
                    "-map", "0:v:0", "-map", "1:a?",
                    "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
                    "-c:v", "libx264", "-preset", "medium", "-crf", "18",
                    "-pix_fmt", "yuv420p",
                    "-frames:v", str(len(frame_files)),
                    "-c:a", "copy",
                    output_path
                ], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=True)

            self._notify(1.0, "Done")
            return True

        except (OSError, subprocess.CalledProcessError, ValueError) as e:
            self._notify(1.0, f"Error: {e}")
            logger.error(f"Video processing failed: {e}")
            return False


def _parse_rate(text: str) -> float:
    """ffprobe rates look like "30000/1001"; a zero denominator means unknown."""
    if not text:
        return FALLBACK_FPS
    num, _, den = text.partition("/")
    if not den:
        return float(num)
    return float(num) / float(den) if float(den) else FALLBACK_FPS


def _parse_number(raw: Optional[str], cast):
    if raw in (None, "", "N/A"):
        return None
    try:
        return cast(float(raw))
    except ValueError:
        return None


def _process_single_frame(frame_path: Path,
                          ditherer: BitmapDitherer,
                          final_resize_multiplier: Optional[int] = None) -> bool:
    """
    Dither one extracted frame and overwrite it. Top-level so the pool can pickle it.
    """
    try:
        with Image.open(frame_path) as img:
            frame = np.array(img.convert('RGBA'), dtype=np.uint8)

        result = Image.fromarray(ditherer.process(frame), 'RGBA').convert('RGB')
        if final_resize_multiplier:
            result = upscale_nearest(result, final_resize_multiplier)
        result.save(frame_path)

        if frame_path.stat().st_size == 0:
            raise ValueError(f"{frame_path.name} was written empty")
        return True

    except (OSError, ValueError) as e:
        logger.error(f"Frame {frame_path.name} failed: {e}")
        return False
