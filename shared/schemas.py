# =============================================================================
# Fundus Edge Demo - Shared Schemas
# =============================================================================
# Pydantic models defining the data contracts of the pipeline: manifest
# samples coming in, inference results going out, and the status payloads
# the local demo API serves to the presentation layer.
# =============================================================================

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Sample(BaseModel):
    """
    One evaluation sample from the dataset manifest.

    Manifest records use ``class_label_remapped`` for the label and may name
    the precomputed embedding as ``precomputed_path`` or ``npy_path``; any
    other keys in the record are ignored.

    Attributes:
        original_path:           Locator of the fundus photograph; also the
                                 sample's identity in the tensor cache.
        precomputed_tensor_path: Optional locator of an NPY embedding.
        ground_truth_index:      Remapped class index in [0, 4).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    original_path: str = Field(..., min_length=1, description="Image locator")
    precomputed_tensor_path: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "precomputed_tensor_path", "precomputed_path", "npy_path"
        ),
        description="Locator of the precomputed NPY embedding",
    )
    ground_truth_index: int = Field(
        ...,
        ge=0,
        lt=4,
        validation_alias=AliasChoices("ground_truth_index", "class_label_remapped"),
        description="Remapped ground-truth class index",
    )

    @property
    def key(self) -> str:
        """Identity of the sample in the tensor cache."""
        return self.original_path


class InferenceResult(BaseModel):
    """
    Outcome of one visible inference run.

    Attributes:
        predicted_index:    Arg-max class index (lowest index wins ties).
        label:              Class name of ``predicted_index``.
        confidence:         Probability of the predicted class.
        probabilities:      Softmax distribution over all classes.
        elapsed_ms:         Wall time of the forward pass alone.
        sample_path:        Locator of the sample's image.
        ground_truth_index: Ground-truth class index of the sample.
        ground_truth_label: Class name of the ground truth.
        correct:            Whether the prediction matches the ground truth.
    """

    predicted_index: int
    label: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    probabilities: List[float]
    elapsed_ms: float
    sample_path: Optional[str] = None
    ground_truth_index: Optional[int] = None
    ground_truth_label: Optional[str] = None
    correct: Optional[bool] = None


class HealthResponse(BaseModel):
    """Loader and cache status reported by ``GET /health``."""

    status: str
    load_state: str
    loading_stage: str
    progress_percent: int = Field(..., ge=0, le=100)
    session_ready: bool
    cache_size: int
    error: Optional[str] = None
    uptime_seconds: float


class SampleResponse(BaseModel):
    """The currently selected sample."""

    original_path: str
    ground_truth_index: int
    ground_truth_label: str
    has_precomputed_tensor: bool


class ConformalMetrics(BaseModel):
    """Conformal-prediction calibration of the shipped student model."""

    alpha: float
    coverage: float
    avg_set_size: float
    coverage_error: float


class ModelCardResponse(BaseModel):
    """Static facts about the shipped student model."""

    model_url: str
    class_names: List[str]
    test_accuracy: float
    conformal: ConformalMetrics
    input_names: List[str] = Field(default_factory=list)
    output_names: List[str] = Field(default_factory=list)
