"""Angle analysis.

An analyzer takes a canonical image and returns two angles plus an image the
user can review. Analyzers are synchronous and CPU bound; ``run_analysis``
runs them in a worker thread under a deadline.
"""
import asyncio
import io
import logging
import math
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import numpy as np
from PIL import Image, ImageDraw, ImageFilter, ImageOps, UnidentifiedImageError

from app.config import settings
from app.utils.exceptions import AnalysisError, AnalysisTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisResult:
    angle: float
    angle2: float
    processed_image: bytes
    mime_type: str = "image/jpeg"


class AngleAnalyzer(Protocol):
    def analyze(self, image_bytes: bytes, deadline: float | None = None) -> AnalysisResult:
        ...


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise AnalysisTimeout("Image analysis timed out, please retry")


def _sobel(a: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    gx = (a[:-2, 2:] + 2 * a[1:-1, 2:] + a[2:, 2:]) - (a[:-2, :-2] + 2 * a[1:-1, :-2] + a[2:, :-2])
    gy = (a[2:, :-2] + 2 * a[2:, 1:-1] + a[2:, 2:]) - (a[:-2, :-2] + 2 * a[:-2, 1:-1] + a[:-2, 2:])
    return gx, gy


def dominant_orientation(gx: np.ndarray, gy: np.ndarray) -> float:
    """Signed angle (degrees) between the dominant edge direction and vertical.

    Uses the structure tensor: the dominant gradient direction is
    ``0.5 * atan2(2*Jxy, Jxx - Jyy)`` and edges run perpendicular to it.
    """
    jxx = float(np.sum(gx * gx))
    jyy = float(np.sum(gy * gy))
    jxy = float(np.sum(gx * gy))
    return math.degrees(0.5 * math.atan2(2 * jxy, jxx - jyy))


class GradientAngleAnalyzer:
    """Measures the dominant edge tilt of the left and right image halves."""

    work_size = 512

    def analyze(self, image_bytes: bytes, deadline: float | None = None) -> AnalysisResult:
        try:
            img = Image.open(io.BytesIO(image_bytes))
            img.load()
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
            raise AnalysisError(f"Could not decode image: {e}")

        gray = img.convert("L")
        if gray.width < 8 or gray.height < 8:
            raise AnalysisError(f"Image too small to analyze: {gray.width}x{gray.height}")
        _check_deadline(deadline)

        work = gray.copy()
        work.thumbnail((self.work_size, self.work_size), Image.Resampling.BILINEAR)
        pixels = np.asarray(work, dtype=np.float64)
        mid = pixels.shape[1] // 2
        left = dominant_orientation(*_sobel(pixels[:, : mid + 1]))
        right = dominant_orientation(*_sobel(pixels[:, mid - 1 :]))
        _check_deadline(deadline)

        processed = self._render(gray, left, right)
        _check_deadline(deadline)

        return AnalysisResult(
            angle=round(abs(left), 2),
            angle2=round(abs(right), 2),
            processed_image=processed,
        )

    def _render(self, gray: Image.Image, left: float, right: float) -> bytes:
        enhanced = ImageOps.autocontrast(gray).filter(ImageFilter.SHARPEN).convert("RGB")
        draw = ImageDraw.Draw(enhanced)
        w, h = enhanced.size
        half = 0.4 * h
        width = max(2, w // 200)
        for cx, theta, colour in ((w / 4, left, (255, 64, 64)), (3 * w / 4, right, (64, 160, 255))):
            # edge direction is perpendicular to the gradient direction
            dx = -math.sin(math.radians(theta)) * half
            dy = math.cos(math.radians(theta)) * half
            draw.line([(cx - dx, h / 2 - dy), (cx + dx, h / 2 + dy)], fill=colour, width=width)
        buf = io.BytesIO()
        enhanced.save(buf, format="JPEG", quality=settings.jpeg_quality)
        return buf.getvalue()


ANALYZERS = {
    "gradient": GradientAngleAnalyzer,
}


@lru_cache
def get_analyzer(name: str | None = None) -> AngleAnalyzer:
    name = name or settings.analyzer
    try:
        return ANALYZERS[name]()
    except KeyError:
        raise ValueError(f"Unknown analyzer '{name}', expected one of {sorted(ANALYZERS)}")


_analysis_slots = asyncio.Semaphore(settings.analysis_concurrency)


def _release_slot(worker: asyncio.Future) -> None:
    _analysis_slots.release()
    if not worker.cancelled() and worker.exception() is not None:
        logger.debug("Analysis worker ended with %r", worker.exception())


async def run_analysis(
    analyzer: AngleAnalyzer,
    image_bytes: bytes,
    timeout: float | None = None,
) -> AnalysisResult:
    """Run ``analyzer`` off the event loop, bounded by ``timeout`` seconds.

    The budget covers waiting for a free analysis slot as well as the run
    itself. The deadline is also handed to the analyzer so a slow run stops
    between stages instead of holding its worker thread; the slot is only
    freed once that thread has returned.
    """
    timeout = timeout or settings.analysis_timeout_seconds
    started = time.monotonic()
    deadline = started + timeout
    try:
        await asyncio.wait_for(_analysis_slots.acquire(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("No analysis slot free within %.1fs", timeout)
        raise AnalysisTimeout("Image analysis timed out, please retry")

    worker = asyncio.ensure_future(asyncio.to_thread(analyzer.analyze, image_bytes, deadline))
    worker.add_done_callback(_release_slot)
    try:
        result = await asyncio.wait_for(asyncio.shield(worker), timeout=max(0.0, deadline - time.monotonic()))
    except asyncio.TimeoutError:
        logger.warning("Analysis exceeded %.1fs budget", timeout)
        raise AnalysisTimeout("Image analysis timed out, please retry")
    except AnalysisTimeout:
        raise
    except AnalysisError as e:
        logger.info("Analysis rejected the image: %s", e.message)
        raise AnalysisError() from e
    except Exception as e:
        logger.exception("Analyzer %s failed", type(analyzer).__name__)
        raise AnalysisError() from e

    if result.angle < 0 or result.angle2 < 0:
        raise AnalysisError("Analyzer returned a negative angle")
    logger.info(
        "Analysis done in %.2fs: angle=%.2f angle2=%.2f",
        time.monotonic() - started, result.angle, result.angle2,
    )
    return result
