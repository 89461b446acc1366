# =============================================================================
# Fundus Edge Demo - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# the on-device inference pipeline and the local demo API. Parameters are
# overridable via environment variables with the FUNDUS_ prefix
# (e.g., FUNDUS_CACHE_CAPACITY=8).
# =============================================================================

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

# Project root directory (where this file lives)
_PROJECT_ROOT = str(Path(__file__).parent.resolve())

# Fundus disease classes, in the order of the model's output logits
DEFAULT_CLASS_NAMES = ("Normal", "Glaucoma", "Myopia", "Diabetes")

# ImageNet statistics the student model was trained with
NORMALIZE_MEAN = (0.485, 0.456, 0.406)
NORMALIZE_STD = (0.229, 0.224, 0.225)


def _parse_optional_int(value: str) -> Optional[int]:
    """Parse an int, treating an empty string or "none" as unset."""
    if value.strip().lower() in ("", "none"):
        return None
    return int(value)


def _parse_names(value: str) -> Tuple[str, ...]:
    """Parse a comma-separated list of class names."""
    return tuple(name.strip() for name in value.split(",") if name.strip())


@dataclass
class Config:
    """
    Centralized configuration for the Fundus Edge Demo.

    All fields except the normalization constants can be overridden via
    environment variables prefixed with FUNDUS_.
    """

    # -- Model --
    model_url: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "models", "light_hgnn_student.onnx")
    )
    download_chunk_size: int = 64 * 1024
    request_timeout_seconds: float = 60.0

    # -- Dataset manifest --
    manifest_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "data", "test_split_preproc.json")
    )

    # -- Preprocessing --
    image_size: int = 224
    band_rows: int = 32
    normalize_mean: Tuple[float, float, float] = NORMALIZE_MEAN
    normalize_std: Tuple[float, float, float] = NORMALIZE_STD

    # -- Precomputed embeddings --
    embedding_size: int = 256

    # -- Classifier --
    class_names: Tuple[str, ...] = DEFAULT_CLASS_NAMES
    noise_amplitude: float = 0.001
    seed: Optional[int] = None

    # -- Tensor cache --
    cache_capacity: int = 5

    # -- Local demo API --
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    # -- Derived (computed post-init) --
    num_classes: int = field(init=False)
    server_url: str = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.num_classes = len(self.class_names)
        self.server_url = f"http://{self.server_host}:{self.server_port}"

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for FUNDUS_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "model_url": str,
            "download_chunk_size": int,
            "request_timeout_seconds": float,
            "manifest_path": str,
            "image_size": int,
            "band_rows": int,
            "embedding_size": int,
            "class_names": _parse_names,
            "noise_amplitude": float,
            "seed": _parse_optional_int,
            "cache_capacity": int,
            "server_host": str,
            "server_port": int,
        }
        for field_name, field_type in field_types.items():
            env_key = f"FUNDUS_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
