# =============================================================================
# Fundus Edge Demo - Demo Controller
# =============================================================================
# Provides DemoController, the single object the presentation layer talks to.
# It owns the model loader, the tensor cache and the inference orchestrator,
# tracks the selected sample, and exposes the state a UI renders:
# load state, progress, session readiness and cache size.
# =============================================================================

import asyncio
import logging
from typing import List, Optional, Sequence

import numpy as np

from config import Config
from edge.cache import TensorCache
from edge.errors import InferenceError, SessionNotReadyError
from edge.inference import InferenceOrchestrator
from edge.loader import LoadState, ModelLoader, SessionConfig
from edge.manifest import pick_random_sample
from edge.preprocess import ImagePreprocessor
from edge.transport import ResourceFetcher
from shared.schemas import InferenceResult, Sample

logger = logging.getLogger(__name__)


class NoSampleSelectedError(LookupError):
    """Inference was requested before any sample was picked."""


class DemoController:
    """
    Presentation boundary over the on-device pipeline.

    Args:
        config:         Global configuration.
        samples:        Manifest samples available for picking.
        fetcher:        Transport shared by the loader, preprocessor and codec.
        session_config: Backend options for session construction.
        rng:            Random generator for sample picks and input noise.
    """

    def __init__(
        self,
        config: Config,
        samples: Sequence[Sample] = (),
        fetcher: Optional[ResourceFetcher] = None,
        session_config: Optional[SessionConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self._config = config
        self._samples: List[Sample] = list(samples)
        self._fetcher = fetcher or ResourceFetcher(
            timeout=config.request_timeout_seconds,
            chunk_size=config.download_chunk_size,
        )
        self._rng = rng if rng is not None else np.random.default_rng(config.seed)
        self._loader = ModelLoader(self._fetcher, session_config or SessionConfig())
        self._cache = TensorCache(config.cache_capacity)
        self._preprocessor = ImagePreprocessor(
            self._fetcher,
            image_size=config.image_size,
            band_rows=config.band_rows,
            mean=config.normalize_mean,
            std=config.normalize_std,
        )
        self._orchestrator: Optional[InferenceOrchestrator] = None
        self._selected: Optional[Sample] = None
        self._backend_error: Optional[Exception] = None
        self._load_task: Optional[asyncio.Task] = None

    # -----------------------------------------------------------------
    # State exposed to the presentation layer
    # -----------------------------------------------------------------

    @property
    def load_state(self) -> LoadState:
        if self._backend_error is not None:
            return LoadState.FAILED
        return self._loader.state

    @property
    def loading_stage(self) -> str:
        return self.load_state.stage_label

    @property
    def progress_percent(self) -> int:
        return self._loader.progress_percent

    @property
    def session_ready(self) -> bool:
        return (
            self._loader.is_ready
            and self._orchestrator is not None
            and self._backend_error is None
        )

    @property
    def error(self) -> Optional[Exception]:
        return self._backend_error or self._loader.error

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    @property
    def samples(self) -> List[Sample]:
        return list(self._samples)

    @property
    def selected_sample(self) -> Optional[Sample]:
        return self._selected

    @property
    def config(self) -> Config:
        return self._config

    @property
    def session(self):
        return self._loader.session

    # -----------------------------------------------------------------
    # Model loading
    # -----------------------------------------------------------------

    async def load_model(self) -> None:
        """Download the model, build the session and the orchestrator."""
        self._orchestrator = None
        self._backend_error = None
        session = await self._loader.load(self._config.model_url)
        self._orchestrator = InferenceOrchestrator(
            session=session,
            fetcher=self._fetcher,
            preprocessor=self._preprocessor,
            cache=self._cache,
            class_names=self._config.class_names,
            noise_amplitude=self._config.noise_amplitude,
            embedding_size=self._config.embedding_size,
            rng=self._rng,
        )

    def start_loading(self) -> asyncio.Task:
        """Load the model in the background on the running event loop."""
        if self._load_task is not None and not self._load_task.done():
            return self._load_task
        self._load_task = asyncio.ensure_future(self.load_model())
        self._load_task.add_done_callback(self._on_load_done)
        return self._load_task

    @staticmethod
    def _on_load_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Model load failed: %s", exc)

    # -----------------------------------------------------------------
    # Sample selection and inference
    # -----------------------------------------------------------------

    def set_samples(self, samples: Sequence[Sample]) -> None:
        """Replace the manifest; the current selection is cleared."""
        self._samples = list(samples)
        self._selected = None

    def pick_random_sample(self) -> Optional[Sample]:
        """Select a random manifest sample; None when the manifest is empty."""
        sample = pick_random_sample(self._samples, self._rng)
        if sample is None:
            logger.warning("Pick skipped: manifest has no samples")
            return None
        logger.info(
            "Selected: %s, GT: %s",
            sample.original_path,
            self._config.class_names[sample.ground_truth_index],
        )
        self._selected = sample
        return sample

    def select_sample(self, sample: Sample) -> None:
        self._selected = sample

    async def run_inference(self, sample: Optional[Sample] = None) -> InferenceResult:
        """
        Run visible inference on ``sample`` (default: the selected sample),
        then prefetch another sample's embedding in the background.

        Raises:
            NoSampleSelectedError: No sample given or selected.
            SessionNotReadyError:  The session is not Ready.
            NetworkError, FormatError, InferenceError: From the pipeline.
        """
        sample = sample or self._selected
        if sample is None:
            raise NoSampleSelectedError("No sample selected; pick one first")
        if not self.session_ready:
            raise SessionNotReadyError(
                f"Model session is not ready (state={self.load_state.value})"
            )

        try:
            result = await self._orchestrator.run(sample)
        except InferenceError as exc:
            # Backend failures end the Ready state
            self._backend_error = exc
            logger.error("Error during inference run: %s", exc)
            raise

        self._orchestrator.schedule_prefetch(self._samples, sample)
        return result

    async def cancel_loading(self) -> bool:
        """
        Abort an in-flight background load; partial model bytes are discarded.

        Returns:
            True if a running load was cancelled.
        """
        if self._load_task is None or self._load_task.done():
            return False
        self._load_task.cancel()
        await asyncio.gather(self._load_task, return_exceptions=True)
        return True

    async def close(self) -> None:
        """Abort any in-flight load and release cached tensors."""
        await self.cancel_loading()
        if self._orchestrator is not None:
            await self._orchestrator.close()
        self._cache.clear()
        logger.info("Demo controller closed.")
