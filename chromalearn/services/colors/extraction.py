"""
Color extraction service.

Reduces an image's opaque pixels to a bounded, deterministic sample, clusters
the sample in LAB space with k-means++ seeded Lloyd iterations, then assigns
every opaque pixel to its nearest centroid to compute dominance percentages.
"""

import asyncio
import io
import time
import warnings
from dataclasses import dataclass
from typing import List, Optional, Union

import cv2
import numpy as np
from loguru import logger
from PIL import Image, UnidentifiedImageError
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from chromalearn.config import config
from chromalearn.utils.metrics import get_metrics
from .conversion import ColorSample, lab_array_to_rgb, rgb_array_to_lab

ImageInput = Union[bytes, Image.Image, np.ndarray]


@dataclass(frozen=True)
class Centroid:
    """Representative color of one cluster and its share of opaque pixels (0-100)."""
    color: ColorSample
    percentage: float

    def to_dict(self) -> dict:
        return {"color": self.color.hex, "percentage": self.percentage}


def decode_image_rgba(image: ImageInput) -> np.ndarray:
    """
    Decode raw bytes, a PIL image or an array into an (H, W, 4) uint8 RGBA array.

    Raises:
        ValueError: If the input cannot be decoded as an image
    """
    if isinstance(image, np.ndarray):
        if image.ndim != 3 or image.shape[2] not in (3, 4):
            raise ValueError(f"Expected an (H, W, 3|4) array, got shape {image.shape}")
        arr = image.astype(np.uint8, copy=False)
        if arr.shape[2] == 3:
            alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
            arr = np.concatenate([arr, alpha], axis=2)
        return arr

    if isinstance(image, (bytes, bytearray)):
        try:
            image = Image.open(io.BytesIO(image))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ValueError(f"Failed to decode image data: {e}") from e

    if not isinstance(image, Image.Image):
        raise ValueError(f"Unsupported image input type: {type(image).__name__}")

    return np.array(image.convert("RGBA"))


def resize_long_edge(img_rgba: np.ndarray, max_edge: int = None) -> np.ndarray:
    """
    Resize image so the longest edge is at most max_edge pixels, keeping aspect ratio.

    Images already within the bound are returned unchanged.
    """
    if max_edge is None:
        max_edge = config.MAX_IMAGE_SIZE

    height, width = img_rgba.shape[:2]
    current_max = max(height, width)

    if current_max <= max_edge:
        return img_rgba

    scale = max_edge / current_max
    new_width = max(1, int(width * scale))
    new_height = max(1, int(height * scale))

    # INTER_AREA for downscaling
    return cv2.resize(img_rgba, (new_width, new_height), interpolation=cv2.INTER_AREA)


def extract_opaque_pixels(img_rgba: np.ndarray, alpha_threshold: int = None) -> np.ndarray:
    """Return the (N, 3) RGB values of pixels with alpha above the threshold, in row-major order."""
    if alpha_threshold is None:
        alpha_threshold = config.ALPHA_THRESHOLD
    flat = img_rgba.reshape(-1, 4)
    return flat[flat[:, 3] > alpha_threshold, :3]


def sample_pixels(pixels: np.ndarray, sample_size: int = None) -> np.ndarray:
    """
    Fixed-stride subsample: every ``max(1, N // sample_size)``-th pixel, capped at sample_size.

    Deterministic for a given pixel order.
    """
    if sample_size is None:
        sample_size = config.SAMPLE_SIZE
    if len(pixels) == 0:
        return pixels
    step = max(1, len(pixels) // sample_size)
    return pixels[::step][:sample_size]


def absolute_tolerance(samples_lab: np.ndarray, tolerance: float) -> float:
    """
    Convert an absolute centroid-movement tolerance into sklearn's ``tol``.

    sklearn stops when the summed squared center shift falls below
    ``tol * mean(per-feature variance)``. Dividing the squared tolerance by
    that variance makes every centroid move less than ``tolerance`` at stop.
    """
    mean_variance = float(np.mean(np.var(samples_lab, axis=0)))
    if mean_variance <= 0.0:
        return 0.0
    return tolerance ** 2 / mean_variance


def cluster_lab(samples_lab: np.ndarray,
                k: int,
                max_iterations: int = None,
                tolerance: float = None,
                rng_seed: Optional[int] = None) -> np.ndarray:
    """
    Cluster LAB samples with k-means++ initialization and Lloyd refinement.

    Args:
        samples_lab: (N, 3) LAB samples, N > 0
        k: Requested cluster count (reduced to N when fewer samples exist)
        max_iterations: Iteration cap
        tolerance: Centroid-movement convergence tolerance
        rng_seed: Seed for the k-means++ draw; fixed seeds give identical centroids

    Returns:
        (k', 3) LAB centroids
    """
    if max_iterations is None:
        max_iterations = config.MAX_ITERATIONS
    if tolerance is None:
        tolerance = config.KMEANS_TOLERANCE

    n_clusters = max(1, min(k, len(samples_lab)))
    kmeans = KMeans(
        n_clusters=n_clusters,
        init="k-means++",
        n_init=1,
        max_iter=max_iterations,
        tol=absolute_tolerance(samples_lab, tolerance),
        random_state=rng_seed,
        algorithm="lloyd",
    )

    with warnings.catch_warnings():
        # Fewer distinct colors than clusters leaves duplicate centroids;
        # those end up with 0% and are dropped later.
        warnings.simplefilter("ignore", ConvergenceWarning)
        kmeans.fit(samples_lab)

    logger.debug(f"k-means converged after {kmeans.n_iter_} iterations (k={n_clusters})")
    return kmeans.cluster_centers_


def _nearest_centroid(lab_chunk: np.ndarray, centers_lab: np.ndarray) -> np.ndarray:
    # (n, 1, 3) - (1, k, 3) -> (n, k)
    distances = np.sum((lab_chunk[:, None, :] - centers_lab[None, :, :]) ** 2, axis=2)
    return distances.argmin(axis=1)


async def assign_pixel_counts(pixels_lab: np.ndarray,
                              centers_lab: np.ndarray,
                              chunk_size: int = None) -> np.ndarray:
    """
    Count how many pixels fall nearest to each centroid.

    Works in fixed-size chunks and yields to the event loop between chunks so
    large images do not starve other tasks. Results do not depend on chunking.
    """
    if chunk_size is None:
        chunk_size = config.CHUNK_SIZE

    counts = np.zeros(len(centers_lab), dtype=np.int64)
    for start in range(0, len(pixels_lab), chunk_size):
        chunk = pixels_lab[start:start + chunk_size]
        labels = _nearest_centroid(chunk, centers_lab)
        counts += np.bincount(labels, minlength=len(centers_lab))
        await asyncio.sleep(0)
    return counts


async def cluster_pixels(pixels_rgb_u8: np.ndarray,
                         k: int = None,
                         sample_size: int = None,
                         max_iterations: int = None,
                         tolerance: float = None,
                         rng_seed: Optional[int] = None,
                         chunk_size: int = None) -> List[Centroid]:
    """
    Reduce opaque pixels to at most k Centroids sorted by descending percentage.

    Returns an empty list when there are no pixels.
    """
    if k is None:
        k = config.DEFAULT_K

    total = len(pixels_rgb_u8)
    if total == 0:
        logger.info("No opaque pixels, returning empty palette")
        return []

    start_time = time.time()

    samples = sample_pixels(pixels_rgb_u8, sample_size)
    samples_lab = rgb_array_to_lab(samples)
    centers_lab = cluster_lab(samples_lab, k, max_iterations, tolerance, rng_seed)

    pixels_lab = rgb_array_to_lab(pixels_rgb_u8)
    counts = await assign_pixel_counts(pixels_lab, centers_lab, chunk_size)

    centers_rgb = lab_array_to_rgb(centers_lab)
    centroids = []
    for center_rgb, count in zip(centers_rgb, counts):
        if count == 0:
            continue
        color = ColorSample.from_rgb(int(center_rgb[0]), int(center_rgb[1]), int(center_rgb[2]))
        centroids.append(Centroid(color=color, percentage=float(count) / total * 100.0))

    centroids.sort(key=lambda c: -c.percentage)

    duration_ms = (time.time() - start_time) * 1000
    get_metrics().record_timing("clustering", duration_ms)
    logger.bind(opaque_pixels=total, sampled=len(samples), k=k).info(
        f"Clustering produced {len(centroids)} colors in {duration_ms:.1f}ms"
    )
    return centroids


async def get_image_colors(image: ImageInput,
                           k: int = None,
                           sample_size: int = None,
                           max_iterations: int = None,
                           max_image_size: int = None,
                           rng_seed: Optional[int] = None) -> List[Centroid]:
    """
    Extract the dominant colors of an image.

    Decodes, bounds the long edge, keeps pixels with alpha above the opacity
    threshold and clusters them. A fully transparent image yields ``[]``.
    """
    rgba = decode_image_rgba(image)
    rgba = resize_long_edge(rgba, max_image_size)
    opaque = extract_opaque_pixels(rgba)
    logger.debug(f"Extracted {len(opaque)} opaque pixels from {rgba.shape[1]}x{rgba.shape[0]} image")
    return await cluster_pixels(
        opaque,
        k=k,
        sample_size=sample_size,
        max_iterations=max_iterations,
        rng_seed=rng_seed,
    )
