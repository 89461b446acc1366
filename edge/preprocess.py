# =============================================================================
# Fundus Edge Demo - Cooperative Image Preprocessing
# =============================================================================
# Converts a fundus photograph into the normalized NCHW tensor the student
# model expects. Normalization runs as an explicit state machine
# (PreprocessJob) that converts one band of rows per step; the async driver
# yields to the event loop between bands so a 224x224 image never holds the
# loop for more than one band of work.
# =============================================================================

import asyncio
import io
import logging
from typing import Sequence

import numpy as np
from PIL import Image

from config import NORMALIZE_MEAN, NORMALIZE_STD
from edge.errors import FetchError, ImageLoadError
from edge.transport import ResourceFetcher

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SIZE = 224
DEFAULT_BAND_ROWS = 32


def decode_image(data: bytes, locator: str, size: int = DEFAULT_IMAGE_SIZE) -> np.ndarray:
    """
    Decode image bytes into a square RGB pixel array.

    Args:
        data:    Encoded image bytes (JPEG, PNG, ...).
        locator: Resource identifier, reported on failure.
        size:    Side length the image is resized to.

    Returns:
        numpy.ndarray of shape (size, size, 3), dtype uint8.

    Raises:
        ImageLoadError: If Pillow cannot decode the bytes.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            rgb = image.convert("RGB").resize((size, size), Image.BILINEAR)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageLoadError(locator, str(exc)) from exc
    return np.asarray(rgb, dtype=np.uint8)


class PreprocessJob:
    """
    Band-by-band normalization of one image into a planar tensor.

    Each ``step()`` converts ``band_rows`` rows of every channel with
    ``(pixel / 255 - mean_c) / std_c`` and writes them into the red, green
    and blue planes. The tensor is only handed out once every band is done.
    Jobs share no state, so a fresh job over the same pixels always yields
    the same tensor.

    Args:
        pixels:    Array of shape (H, W, 3), dtype uint8, with H == W.
        mean:      Per-channel means (R, G, B).
        std:       Per-channel standard deviations (R, G, B).
        band_rows: Rows converted per step.
    """

    def __init__(
        self,
        pixels: np.ndarray,
        mean: Sequence[float] = NORMALIZE_MEAN,
        std: Sequence[float] = NORMALIZE_STD,
        band_rows: int = DEFAULT_BAND_ROWS,
    ):
        if pixels.ndim != 3 or pixels.shape[2] != 3 or pixels.shape[0] != pixels.shape[1]:
            raise ValueError(f"Expected a square (H, W, 3) bitmap, got shape {pixels.shape}")
        if band_rows < 1:
            raise ValueError(f"band_rows must be positive, got {band_rows}")

        self._pixels = pixels
        self._mean = np.asarray(mean, dtype=np.float64)
        self._std = np.asarray(std, dtype=np.float64)
        self._band_rows = band_rows
        self._height = pixels.shape[0]
        self._planes = np.empty((3, pixels.shape[0], pixels.shape[1]), dtype=np.float32)
        self._next_row = 0

    @property
    def done(self) -> bool:
        return self._next_row >= self._height

    @property
    def rows_done(self) -> int:
        return self._next_row

    @property
    def total_bands(self) -> int:
        return -(-self._height // self._band_rows)

    def step(self) -> bool:
        """
        Convert the next band of rows.

        Returns:
            True once every band has been converted.
        """
        if self.done:
            return True

        start = self._next_row
        end = min(start + self._band_rows, self._height)
        band = self._pixels[start:end].astype(np.float64) / 255.0
        normalized = (band - self._mean) / self._std
        # (rows, W, C) → (C, rows, W): planar channel order
        self._planes[:, start:end, :] = normalized.transpose(2, 0, 1)
        self._next_row = end

        logger.debug(
            "Rows %d-%d done (%.0f%% of rows)", start, end, end / self._height * 100
        )
        return self.done

    def result(self) -> np.ndarray:
        """
        The finished tensor of shape (1, 3, H, W).

        Raises:
            RuntimeError: If called before every band is converted.
        """
        if not self.done:
            raise RuntimeError(
                f"Preprocessing incomplete: {self._next_row}/{self._height} rows converted"
            )
        return self._planes[np.newaxis, ...]


async def run_job(job: PreprocessJob) -> np.ndarray:
    """Drive a job to completion, yielding to the event loop after each band."""
    while not job.step():
        await asyncio.sleep(0)
    await asyncio.sleep(0)
    tensor = job.result()
    logger.debug("Tensor ready: shape %s", list(tensor.shape))
    return tensor


class ImagePreprocessor:
    """
    Fetches, decodes and normalizes sample images into model input tensors.

    Args:
        fetcher:    Transport used to read image resources.
        image_size: Side length of the model input.
        band_rows:  Rows converted per scheduling tick.
        mean:       Per-channel normalization means.
        std:        Per-channel normalization standard deviations.
    """

    def __init__(
        self,
        fetcher: ResourceFetcher,
        image_size: int = DEFAULT_IMAGE_SIZE,
        band_rows: int = DEFAULT_BAND_ROWS,
        mean: Sequence[float] = NORMALIZE_MEAN,
        std: Sequence[float] = NORMALIZE_STD,
    ):
        self._fetcher = fetcher
        self._image_size = image_size
        self._band_rows = band_rows
        self._mean = tuple(mean)
        self._std = tuple(std)

    async def load_pixels(self, locator: str) -> np.ndarray:
        """
        Fetch and decode an image resource.

        Raises:
            ImageLoadError: If the image cannot be fetched or decoded.
        """
        try:
            data = await self._fetcher.fetch(locator)
        except FetchError as exc:
            logger.error("Image load failed: %s", locator)
            raise ImageLoadError(locator, exc.reason) from exc
        return decode_image(data, locator, self._image_size)

    async def prepare(self, locator: str) -> np.ndarray:
        """
        Produce the normalized (1, 3, size, size) tensor for an image.

        Raises:
            ImageLoadError: If the image cannot be fetched or decoded.
        """
        pixels = await self.load_pixels(locator)
        job = PreprocessJob(pixels, self._mean, self._std, self._band_rows)
        return await run_job(job)
