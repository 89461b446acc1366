# =============================================================================
# Fundus Edge Demo - Local Demo API
# =============================================================================
# FastAPI application exposing the DemoController to a browser UI running on
# the same device: load progress, random sample picking and inference runs.
# The model is downloaded and executed in this process; nothing is sent to a
# remote inference service.
# =============================================================================

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from config import get_config
from edge.controller import DemoController, NoSampleSelectedError
from edge.errors import BackendError, FormatError, NetworkError, SessionNotReadyError
from edge.manifest import load_manifest
from shared.schemas import (
    ConformalMetrics,
    HealthResponse,
    InferenceResult,
    ModelCardResponse,
    SampleResponse,
)

logger = logging.getLogger(__name__)

# Held-out evaluation of the distilled student model
_STUDENT_TEST_ACCURACY = 0.9319333816075308
_STUDENT_CONFORMAL = ConformalMetrics(
    alpha=0.05,
    coverage=0.9855177407675597,
    avg_set_size=1.0702389572773352,
    coverage_error=0.03551774076755976,
)


def _build_controller() -> DemoController:
    """Create a controller from the global config and the local manifest."""
    config = get_config()
    samples = []
    if os.path.exists(config.manifest_path):
        samples = load_manifest(config.manifest_path)
    else:
        logger.warning("Manifest not found at %s; no samples to pick", config.manifest_path)
    return DemoController(config, samples)


def create_app(controller: Optional[DemoController] = None) -> FastAPI:
    """
    Build the demo API around a controller.

    Args:
        controller: Controller to serve; built from the global config on
                    startup when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        On startup: build the controller if needed and start the model
        download in the background so /health can report progress.

        On shutdown: cancel any in-flight load and release cached tensors.
        """
        app.state.start_time = time.time()
        app.state.controller = controller or _build_controller()

        logger.info("Starting demo API — loading model in the background...")
        app.state.controller.start_loading()
        yield

        logger.info("Shutting down demo API...")
        await app.state.controller.close()

    app = FastAPI(
        title="Fundus Edge Demo",
        description=(
            "Runs the distilled fundus classifier on-device with ONNX Runtime "
            "(CPU, single thread) and serves load progress, random test "
            "samples and predictions to the demo UI."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health", response_model=HealthResponse)
    def health_check(request: Request):
        """Loader state, download progress and cache size."""
        ctrl: DemoController = request.app.state.controller
        uptime = time.time() - request.app.state.start_time
        error = ctrl.error
        return HealthResponse(
            status="ok" if ctrl.session_ready else ctrl.load_state.value,
            load_state=ctrl.load_state.value,
            loading_stage=ctrl.loading_stage,
            progress_percent=ctrl.progress_percent,
            session_ready=ctrl.session_ready,
            cache_size=ctrl.cache_size,
            error=str(error) if error is not None else None,
            uptime_seconds=round(uptime, 2),
        )

    @app.get("/api/v1/model", response_model=ModelCardResponse)
    def model_card(request: Request):
        """Class names and held-out metrics of the shipped model."""
        ctrl: DemoController = request.app.state.controller
        config = ctrl.config
        session = ctrl.session
        return ModelCardResponse(
            model_url=config.model_url,
            class_names=list(config.class_names),
            test_accuracy=_STUDENT_TEST_ACCURACY,
            conformal=_STUDENT_CONFORMAL,
            input_names=list(session.input_names) if session is not None else [],
            output_names=list(session.output_names) if session is not None else [],
        )

    def _sample_response(ctrl: DemoController) -> SampleResponse:
        sample = ctrl.selected_sample
        return SampleResponse(
            original_path=sample.original_path,
            ground_truth_index=sample.ground_truth_index,
            ground_truth_label=ctrl.config.class_names[sample.ground_truth_index],
            has_precomputed_tensor=sample.precomputed_tensor_path is not None,
        )

    @app.post("/api/v1/samples/random", response_model=SampleResponse)
    def pick_random(request: Request):
        """Select a random manifest sample."""
        ctrl: DemoController = request.app.state.controller
        if ctrl.pick_random_sample() is None:
            raise HTTPException(status_code=404, detail="Manifest has no samples")
        return _sample_response(ctrl)

    @app.get("/api/v1/samples/current", response_model=SampleResponse)
    def current_sample(request: Request):
        """The currently selected sample."""
        ctrl: DemoController = request.app.state.controller
        if ctrl.selected_sample is None:
            raise HTTPException(status_code=404, detail="No sample selected")
        return _sample_response(ctrl)

    @app.post("/api/v1/inference", response_model=InferenceResult)
    async def run_inference(request: Request):
        """Run inference on the selected sample."""
        ctrl: DemoController = request.app.state.controller
        try:
            return await ctrl.run_inference()
        except NoSampleSelectedError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        except SessionNotReadyError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        except FormatError as exc:
            raise HTTPException(status_code=422, detail=f"Invalid tensor resource: {exc}")
        except NetworkError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        except BackendError as exc:
            raise HTTPException(status_code=500, detail=f"Inference failed: {exc}")

    return app


app = create_app()
