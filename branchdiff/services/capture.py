from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from branchdiff.constants import DEFAULT_DIFF_THRESHOLD, DEFAULT_NAVIGATION_TIMEOUT_MS, DEFAULT_VIEWPORT
from branchdiff.services.errors import CaptureError
from branchdiff.services.settings import PipelineSettings

LOGGER = logging.getLogger("branchdiff.capture")

# 35215 is the largest possible YIQ delta between two colours
MAX_YIQ_DELTA = 35215.0
CHANGED_COLOUR = (255, 0, 0, 255)
UNCHANGED_FADE = 0.1
DIFF_BAND_ROWS = 512


class ScreenshotCapturer:
    """Render a URL in a throwaway headless browser and return a full-page PNG."""

    def __init__(
        self,
        *,
        viewport: Optional[Dict[str, int]] = None,
        navigation_timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS,
        browser: str = "chromium",
    ) -> None:
        self._viewport = dict(viewport or DEFAULT_VIEWPORT)
        self._navigation_timeout_ms = navigation_timeout_ms
        self._browser = browser

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "ScreenshotCapturer":
        return cls(
            viewport={"width": settings.viewport_width, "height": settings.viewport_height},
            navigation_timeout_ms=settings.navigation_timeout_ms,
        )

    def capture(self, url: str) -> bytes:
        LOGGER.info("Capturing %s with %s", url, self._browser)
        try:
            with sync_playwright() as playwright:
                browser_type = getattr(playwright, self._browser, None)
                if browser_type is None:
                    raise CaptureError(f"Unsupported browser '{self._browser}'")
                launch_kwargs: Dict[str, object] = {"headless": True}
                if self._browser == "chromium":
                    launch_kwargs["args"] = ["--disable-dev-shm-usage", "--no-sandbox"]
                browser = browser_type.launch(**launch_kwargs)
                try:
                    page = browser.new_page(viewport=self._viewport)
                    page.goto(url, wait_until="networkidle", timeout=self._navigation_timeout_ms)
                    return page.screenshot(full_page=True, type="png")
                finally:
                    browser.close()
        except PlaywrightError as exc:
            raise CaptureError(f"Screenshot of {url} failed: {exc}") from exc


@dataclass(frozen=True)
class ComparisonResult:
    diff_image: bytes
    changed_pixel_count: int
    total_pixel_count: int
    width: int
    height: int

    @property
    def percentage(self) -> float:
        if not self.total_pixel_count:
            return 0.0
        return round(self.changed_pixel_count / self.total_pixel_count * 100.0, 4)


def _open_rgba(data: bytes, label: str) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.convert("RGBA")
    except (UnidentifiedImageError, OSError) as exc:
        raise CaptureError(f"{label} screenshot could not be decoded: {exc}") from exc


def _pad_to_size(img: Image.Image, target_width: int, target_height: int) -> Image.Image:
    right = max(target_width - img.width, 0)
    bottom = max(target_height - img.height, 0)
    if right == 0 and bottom == 0:
        return img
    return ImageOps.expand(img, border=(0, 0, right, bottom), fill=(0, 0, 0, 0))


def _blend_on_white(rgba: np.ndarray) -> np.ndarray:
    rgb = rgba[..., :3].astype(np.float32)
    alpha = rgba[..., 3:4].astype(np.float32) / np.float32(255.0)
    return 255.0 + (rgb - 255.0) * alpha


def _yiq(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    y = r * 0.29889531 + g * 0.58662247 + b * 0.11448223
    i = r * 0.59597799 - g * 0.27417610 - b * 0.32180189
    q = r * 0.21147017 - g * 0.52261711 + b * 0.31114694
    return y, i, q


class DiffEngine:
    """Perceptual pixel diff between two screenshots of possibly different sizes."""

    def __init__(self, threshold: float = DEFAULT_DIFF_THRESHOLD, band_rows: int = DIFF_BAND_ROWS) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("Diff threshold must be between 0 and 1.")
        if band_rows < 1:
            raise ValueError("Diff band must span at least one row.")
        self._threshold = threshold
        self._band_rows = band_rows

    @property
    def threshold(self) -> float:
        return self._threshold

    def compare(self, baseline: bytes, candidate: bytes) -> ComparisonResult:
        base_img = _open_rgba(baseline, "Baseline")
        cand_img = _open_rgba(candidate, "Candidate")
        width = max(base_img.width, cand_img.width)
        height = max(base_img.height, cand_img.height)
        base_pixels = np.asarray(_pad_to_size(base_img, width, height), dtype=np.uint8)
        cand_pixels = np.asarray(_pad_to_size(cand_img, width, height), dtype=np.uint8)

        limit = np.float32(MAX_YIQ_DELTA * self._threshold * self._threshold)
        output = np.empty((height, width, 4), dtype=np.uint8)
        output[..., 3] = 255
        changed_pixels = 0
        # float intermediates are only ever allocated for one band of rows
        for top in range(0, height, self._band_rows):
            bottom = min(top + self._band_rows, height)
            base_y, base_i, base_q = _yiq(_blend_on_white(base_pixels[top:bottom]))
            cand_y, cand_i, cand_q = _yiq(_blend_on_white(cand_pixels[top:bottom]))
            delta = (
                0.5053 * (base_y - cand_y) ** 2
                + 0.299 * (base_i - cand_i) ** 2
                + 0.1957 * (base_q - cand_q) ** 2
            )
            changed = delta > limit
            changed_pixels += int(np.count_nonzero(changed))

            faded = np.clip(np.rint(255.0 + (base_y - 255.0) * UNCHANGED_FADE), 0, 255).astype(np.uint8)
            band = output[top:bottom]
            band[..., 0] = faded
            band[..., 1] = faded
            band[..., 2] = faded
            band[changed] = CHANGED_COLOUR
        total_pixels = width * height

        buffer = io.BytesIO()
        Image.fromarray(output).save(buffer, format="PNG")
        LOGGER.debug(
            "Compared %sx%s canvas: %s of %s pixels changed",
            width,
            height,
            changed_pixels,
            total_pixels,
        )
        return ComparisonResult(
            diff_image=buffer.getvalue(),
            changed_pixel_count=changed_pixels,
            total_pixel_count=total_pixels,
            width=width,
            height=height,
        )
