# =============================================================================
# Fundus Edge Demo - Inference Orchestrator
# =============================================================================
# Provides InferenceOrchestrator, which turns a manifest sample into a ranked
# prediction on the device:
#
#   1. Resolve the input tensor: precomputed embeddings go through the LRU
#      cache and the NPY codec, raw photographs through the band scheduler.
#   2. Warm-start: the first resolved tensor primes the backend with one
#      discarded forward pass.
#   3. Perturb every element with uniform noise in [-amplitude, +amplitude].
#   4. Run one timed forward pass, softmax the 4 logits, take the arg-max.
#   5. Prefetch: after a visible run, decode a different sample's embedding
#      into the cache in the background.
# =============================================================================

import asyncio
import logging
import time
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from edge.cache import TensorCache
from edge.errors import InferenceError, SessionNotReadyError
from edge.loader import ModelSession
from edge.npy import decode_npy
from edge.preprocess import ImagePreprocessor
from edge.transport import ResourceFetcher
from shared.schemas import InferenceResult, Sample

logger = logging.getLogger(__name__)

DEFAULT_NOISE_AMPLITUDE = 0.001


def softmax(logits: Sequence[float]) -> np.ndarray:
    """
    Numerically stable softmax: subtract the max logit before exponentiating.

    Returns:
        float64 probabilities summing to 1.
    """
    values = np.asarray(logits, dtype=np.float64).reshape(-1)
    exps = np.exp(values - values.max())
    return exps / exps.sum()


def argmax_first(probabilities: Sequence[float]) -> int:
    """Index of the largest value; the lowest index wins ties."""
    best_index = 0
    best_value = probabilities[0]
    for index in range(1, len(probabilities)):
        if probabilities[index] > best_value:
            best_index = index
            best_value = probabilities[index]
    return best_index


class InferenceOrchestrator:
    """
    Runs visible inference for manifest samples against a Ready session.

    The orchestrator is the single logical owner of the tensor cache. The
    warm-start flag lives as long as the orchestrator, so one orchestrator
    must be created per session.

    Args:
        session:         Ready model session (shared, read-only).
        fetcher:         Transport used to read NPY embeddings.
        preprocessor:    Image-to-tensor scheduler for samples without embeddings.
        cache:           LRU cache of decoded embeddings.
        class_names:     Class names in logit order.
        noise_amplitude: Half-width of the uniform input perturbation.
        embedding_size:  Element count every NPY embedding must hold.
        rng:             Random generator for noise and prefetch picks.
    """

    def __init__(
        self,
        session: ModelSession,
        fetcher: ResourceFetcher,
        preprocessor: ImagePreprocessor,
        cache: TensorCache,
        class_names: Sequence[str],
        noise_amplitude: float = DEFAULT_NOISE_AMPLITUDE,
        embedding_size: int = 256,
        rng: Optional[np.random.Generator] = None,
    ):
        if session is None:
            raise SessionNotReadyError("Inference requires a Ready model session")
        if noise_amplitude < 0:
            raise ValueError(f"noise_amplitude must be >= 0, got {noise_amplitude}")

        self._session = session
        self._fetcher = fetcher
        self._preprocessor = preprocessor
        self._cache = cache
        self._class_names = tuple(class_names)
        self._noise_amplitude = noise_amplitude
        self._embedding_size = embedding_size
        self._rng = rng if rng is not None else np.random.default_rng()
        self._warmed = False
        self._prefetches: Dict[str, asyncio.Task] = {}

    @property
    def cache(self) -> TensorCache:
        return self._cache

    @property
    def warmed(self) -> bool:
        """Whether the one-time warm-start pass has been attempted."""
        return self._warmed

    @property
    def pending_prefetches(self) -> int:
        return sum(1 for task in self._prefetches.values() if not task.done())

    # -----------------------------------------------------------------
    # Tensor resolution
    # -----------------------------------------------------------------

    async def load_embedding(self, locator: str) -> np.ndarray:
        """
        Fetch and decode a precomputed NPY embedding.

        Raises:
            FetchError:  If the resource cannot be read.
            FormatError: If the bytes are not a valid 256-value float32 NPY.
        """
        data = await self._fetcher.fetch(locator)
        return decode_npy(data, self._embedding_size)

    async def resolve_tensor(self, sample: Sample) -> np.ndarray:
        """
        Produce the model input for a sample.

        Embedding samples are served from the cache when possible and cached
        after decoding; image samples are preprocessed fresh every time.
        The first successful resolution triggers the warm-start pass.
        """
        if sample.precomputed_tensor_path:
            pending = self._prefetches.get(sample.key)
            if pending is not None and not pending.done():
                # Let an in-flight prefetch of this key finish before reading the cache
                await asyncio.wait({pending})

            entry = self._cache.get(sample.key)
            if entry is not None:
                tensor = entry.tensor
            else:
                tensor = await self.load_embedding(sample.precomputed_tensor_path)
                self._cache.set(sample.key, tensor, sample.ground_truth_index)
        else:
            tensor = await self._preprocessor.prepare(sample.original_path)

        await self._warm_up(tensor)
        return tensor

    # -----------------------------------------------------------------
    # Forward pass
    # -----------------------------------------------------------------

    def perturb(self, tensor: np.ndarray) -> np.ndarray:
        """Return a copy of ``tensor`` with independent uniform noise added."""
        if self._noise_amplitude == 0:
            return np.array(tensor, dtype=np.float32, copy=True)
        noise = self._rng.uniform(-self._noise_amplitude, self._noise_amplitude, size=tensor.shape)
        return (tensor + noise).astype(np.float32)

    async def forward(self, tensor: np.ndarray) -> Tuple[np.ndarray, float]:
        """
        Run one forward pass.

        Returns:
            (logits, elapsed_ms): the flattened class logits and the wall
            time of the forward pass alone.

        Raises:
            InferenceError: If the backend fails or returns the wrong length.
        """
        input_name = self._session.input_names[0]
        start = time.perf_counter()
        try:
            outputs = self._session.run({input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"Forward pass failed: {exc}") from exc
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        await asyncio.sleep(0)

        logits = np.asarray(outputs[0], dtype=np.float64).reshape(-1)
        if logits.size != len(self._class_names):
            raise InferenceError(
                f"Expected {len(self._class_names)} logits from "
                f"{self._session.output_names[0]!r}, got {logits.size}"
            )
        return logits, elapsed_ms

    async def _warm_up(self, tensor: np.ndarray) -> None:
        """Absorb first-call backend latency with one discarded pass."""
        if self._warmed:
            return
        self._warmed = True
        try:
            _, elapsed_ms = await self.forward(self.perturb(tensor))
            logger.info("Warm-up forward pass done (%.1fms)", elapsed_ms)
        except Exception:
            logger.warning("Warm-up forward pass failed; continuing", exc_info=True)

    async def run(self, sample: Sample) -> InferenceResult:
        """
        Run visible inference for one sample.

        Raises:
            NetworkError, FormatError: If the input cannot be resolved.
            InferenceError:            If the forward pass fails.
        """
        tensor = await self.resolve_tensor(sample)
        logger.info(
            "Feeding tensor to input: %s, shape: %s",
            self._session.input_names[0],
            list(tensor.shape),
        )

        logits, elapsed_ms = await self.forward(self.perturb(tensor))
        probabilities = softmax(logits)
        predicted = argmax_first(probabilities)
        confidence = float(probabilities[predicted])

        result = InferenceResult(
            predicted_index=predicted,
            label=self._class_names[predicted],
            confidence=confidence,
            probabilities=[float(p) for p in probabilities],
            elapsed_ms=round(elapsed_ms, 2),
            sample_path=sample.original_path,
            ground_truth_index=sample.ground_truth_index,
            ground_truth_label=self._class_names[sample.ground_truth_index],
            correct=predicted == sample.ground_truth_index,
        )
        logger.info(
            "Prediction: %s (index %d), confidence: %.2f%%, forward pass %.2fms",
            result.label,
            predicted,
            confidence * 100,
            elapsed_ms,
        )
        return result

    # -----------------------------------------------------------------
    # Prefetch
    # -----------------------------------------------------------------

    def _pick_prefetch_candidate(
        self, samples: Sequence[Sample], current: Sample
    ) -> Optional[Sample]:
        """Draw up to len(samples) times for an embedding sample other than ``current``."""
        for _ in range(len(samples)):
            candidate = samples[int(self._rng.integers(len(samples)))]
            if candidate.key != current.key and candidate.precomputed_tensor_path:
                return candidate
        return None

    def schedule_prefetch(
        self, samples: Sequence[Sample], current: Sample
    ) -> Optional[asyncio.Task]:
        """
        Start decoding another sample's embedding into the cache.

        Returns:
            The background task, or None when there is nothing to prefetch.
        """
        if len(samples) < 2:
            return None

        candidate = self._pick_prefetch_candidate(samples, current)
        if candidate is None:
            logger.debug("Prefetch skipped: no other embedding sample drawn")
            return None
        if candidate.key in self._cache or candidate.key in self._prefetches:
            logger.debug("Prefetch skipped: %s already cached or in flight", candidate.key)
            return None

        task = asyncio.ensure_future(self._prefetch(candidate))
        self._prefetches[candidate.key] = task
        task.add_done_callback(lambda _: self._prefetches.pop(candidate.key, None))
        return task

    async def _prefetch(self, sample: Sample) -> None:
        try:
            tensor = await self.load_embedding(sample.precomputed_tensor_path)
        except Exception:
            logger.debug("Prefetch of %s failed; dropped", sample.key, exc_info=True)
            return
        if sample.key not in self._cache:
            self._cache.set(sample.key, tensor, sample.ground_truth_index)
            logger.debug("Prefetched %s into cache", sample.key)

    async def close(self) -> None:
        """Cancel background prefetches and release cached tensors."""
        tasks = list(self._prefetches.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._prefetches.clear()
        self._cache.clear()
