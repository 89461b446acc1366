# =============================================================================
# Fundus Edge Demo - Model Acquisition & Session Init
# =============================================================================
# Provides ModelLoader, which streams the ONNX model with byte-accurate
# progress and then builds an immutable ModelSession pinned to the portable
# CPU execution provider with single-threaded execution.
#
# Load lifecycle:
#   IDLE → DOWNLOADING → INITIALIZING → READY
#                      ↘              ↘ FAILED
# Cancelling an in-flight load discards the partial bytes and returns to IDLE.
# =============================================================================

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import onnxruntime as ort

from edge.errors import SessionInitError, SizeUnknownError
from edge.transport import ResourceFetcher

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class LoadState(str, enum.Enum):
    """Lifecycle states of a model load."""

    IDLE = "idle"
    DOWNLOADING = "downloading"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"

    @property
    def stage_label(self) -> str:
        """Human-readable loading stage shown by the presentation layer."""
        return _STAGE_LABELS[self]


_STAGE_LABELS = {
    LoadState.IDLE: "Waiting to load model",
    LoadState.DOWNLOADING: "Downloading model...",
    LoadState.INITIALIZING: "Creating ONNX session...",
    LoadState.READY: "Model ready",
    LoadState.FAILED: "Model load failed",
}

_GRAPH_OPTIMIZATION_LEVELS = {
    "disable": "ORT_DISABLE_ALL",
    "basic": "ORT_ENABLE_BASIC",
    "extended": "ORT_ENABLE_EXTENDED",
    "all": "ORT_ENABLE_ALL",
}


@dataclass(frozen=True)
class SessionConfig:
    """
    Explicit backend configuration applied once at session construction.

    Attributes:
        providers:            ONNX Runtime execution providers, in priority order.
        intra_op_num_threads: Threads used inside a single operator.
        inter_op_num_threads: Threads used across independent operators.
        sequential:           Run graph nodes one at a time.
        graph_optimization:   One of "disable", "basic", "extended", "all".
    """

    providers: Tuple[str, ...] = ("CPUExecutionProvider",)
    intra_op_num_threads: int = 1
    inter_op_num_threads: int = 1
    sequential: bool = True
    graph_optimization: str = "all"

    def to_session_options(self) -> ort.SessionOptions:
        """Build the onnxruntime.SessionOptions for this configuration."""
        options = ort.SessionOptions()
        options.intra_op_num_threads = self.intra_op_num_threads
        options.inter_op_num_threads = self.inter_op_num_threads
        if self.sequential:
            options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
        level_name = _GRAPH_OPTIMIZATION_LEVELS.get(self.graph_optimization, "ORT_ENABLE_ALL")
        options.graph_optimization_level = getattr(ort.GraphOptimizationLevel, level_name)
        return options


class ModelSession:
    """
    Read-only handle over a compiled inference graph.

    Wraps an onnxruntime.InferenceSession (or any object exposing
    ``get_inputs``, ``get_outputs`` and ``run``). Input and output names are
    captured once, in graph order, at construction.

    Args:
        backend: The underlying inference session.
    """

    __slots__ = ("_backend", "_input_names", "_output_names")

    def __init__(self, backend):
        input_names = tuple(node.name for node in backend.get_inputs())
        output_names = tuple(node.name for node in backend.get_outputs())
        if not input_names or not output_names:
            raise SessionInitError(
                f"Model must declare inputs and outputs (inputs={input_names}, "
                f"outputs={output_names})"
            )
        object.__setattr__(self, "_backend", backend)
        object.__setattr__(self, "_input_names", input_names)
        object.__setattr__(self, "_output_names", output_names)

    def __setattr__(self, name, value):
        raise AttributeError("ModelSession is immutable")

    @classmethod
    def from_bytes(cls, model_bytes: bytes, session_config: SessionConfig) -> "ModelSession":
        """
        Compile a model buffer into a session.

        Raises:
            SessionInitError: If the backend rejects the model or options.
        """
        try:
            backend = ort.InferenceSession(
                model_bytes,
                sess_options=session_config.to_session_options(),
                providers=list(session_config.providers),
            )
        except Exception as exc:
            raise SessionInitError(f"Failed to create inference session: {exc}") from exc
        return cls(backend)

    @property
    def input_names(self) -> Tuple[str, ...]:
        return self._input_names

    @property
    def output_names(self) -> Tuple[str, ...]:
        return self._output_names

    def run(self, feeds: Dict[str, np.ndarray]) -> List[np.ndarray]:
        """Execute one forward pass and return the outputs in graph order."""
        return self._backend.run(list(self._output_names), feeds)


class ProgressTracker:
    """
    Combines byte counts of every resource fetched in one load cycle into a
    single 0-100 percentage.

    Args:
        on_progress: Called with the rounded combined percentage on each update.
    """

    def __init__(self, on_progress: Optional[ProgressCallback] = None):
        self._on_progress = on_progress
        self.expected_bytes = 0
        self.downloaded_bytes = 0

    @property
    def percent(self) -> int:
        if self.expected_bytes <= 0:
            return 0
        return min(100, round(self.downloaded_bytes / self.expected_bytes * 100))

    def add_expected(self, total_bytes: int) -> None:
        """Register the total size of one more resource."""
        self.expected_bytes += total_bytes
        self._notify()

    def add_downloaded(self, chunk_bytes: int) -> None:
        """Register a received chunk."""
        self.downloaded_bytes += chunk_bytes
        self._notify()

    def _notify(self) -> None:
        if self._on_progress is not None and self.expected_bytes > 0:
            self._on_progress(self.percent)


class ModelLoader:
    """
    Downloads a model with progress tracking and constructs its session.

    Args:
        fetcher:        Transport used to stream model resources.
        session_config: Backend options applied at session construction.
        on_progress:    Optional callback receiving the combined percentage.
    """

    def __init__(
        self,
        fetcher: ResourceFetcher,
        session_config: Optional[SessionConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self._fetcher = fetcher
        self._session_config = session_config or SessionConfig()
        self._on_progress = on_progress
        self._state = LoadState.IDLE
        self._progress = 0
        self._error: Optional[Exception] = None
        self._session: Optional[ModelSession] = None

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def progress_percent(self) -> int:
        return self._progress

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    @property
    def session(self) -> Optional[ModelSession]:
        return self._session

    @property
    def is_ready(self) -> bool:
        """Whether a session has been constructed and can serve inference."""
        return self._state is LoadState.READY and self._session is not None

    def _set_state(self, state: LoadState) -> None:
        if state is not self._state:
            logger.info("Model load state: %s → %s", self._state.value, state.value)
            self._state = state

    def _report_progress(self, percent: int) -> None:
        self._progress = percent
        if self._on_progress is not None:
            self._on_progress(percent)

    async def load(self, locator: str) -> ModelSession:
        """
        Download the model resource and build the session.

        Returns:
            The Ready ModelSession.

        Raises:
            SizeUnknownError: A resource did not report its size up front.
            FetchError:       A transfer failed.
            SessionInitError: The backend rejected the model.
        """
        self._session = None
        self._error = None
        self._progress = 0
        self._set_state(LoadState.DOWNLOADING)
        tracker = ProgressTracker(self._report_progress)

        try:
            buffer = await self._download(locator, tracker)
            logger.info("Model downloaded (%d bytes).", tracker.downloaded_bytes)

            self._set_state(LoadState.INITIALIZING)
            await asyncio.sleep(0)
            session = ModelSession.from_bytes(buffer, self._session_config)
        except asyncio.CancelledError:
            logger.info("Model load was aborted.")
            self._progress = 0
            self._set_state(LoadState.IDLE)
            raise
        except Exception as exc:
            logger.error("Error during model load: %s", exc)
            self._error = exc
            self._set_state(LoadState.FAILED)
            raise

        self._session = session
        self._report_progress(100)
        self._set_state(LoadState.READY)
        logger.info(
            "ONNX session created (inputs=%s, outputs=%s, providers=%s)",
            session.input_names,
            session.output_names,
            self._session_config.providers,
        )
        return session

    async def _download(self, locator: str, tracker: ProgressTracker) -> bytes:
        """Stream one resource into memory, updating progress per chunk."""
        chunks: List[bytes] = []
        stream = await self._fetcher.open(locator)
        with stream:
            if stream.total_size is None:
                raise SizeUnknownError(locator)

            logger.info(
                "Fetching model: %s, size: %d bytes",
                locator.rsplit("/", 1)[-1],
                stream.total_size,
            )
            tracker.add_expected(stream.total_size)

            async for chunk in stream:
                chunks.append(chunk)
                tracker.add_downloaded(len(chunk))

        return b"".join(chunks)

