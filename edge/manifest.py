# =============================================================================
# Fundus Edge Demo - Dataset Manifest Helpers
# =============================================================================
# The manifest is an ordered list of evaluation samples. Fetching it is the
# host application's job; this module only validates records into Sample
# objects and picks samples at random.
# =============================================================================

import json
import logging
from typing import Iterable, List, Optional, Sequence

import numpy as np
from pydantic import ValidationError

from shared.schemas import Sample

logger = logging.getLogger(__name__)


def parse_manifest(records: Iterable[dict]) -> List[Sample]:
    """
    Validate raw manifest records into samples, keeping their order.

    Raises:
        pydantic.ValidationError: If a record lacks a path or a valid label.
    """
    return [Sample.model_validate(record) for record in records]


def load_manifest(path: str) -> List[Sample]:
    """
    Read a JSON manifest (a list of records) from the local filesystem.

    Raises:
        OSError:    If the file cannot be read.
        ValueError: If the file is not a JSON list of valid records.
    """
    with open(path, "r", encoding="utf-8") as handle:
        records = json.load(handle)
    if not isinstance(records, list):
        raise ValueError(f"Manifest {path} must contain a JSON list, got {type(records).__name__}")

    try:
        samples = parse_manifest(records)
    except ValidationError as exc:
        raise ValueError(f"Invalid manifest record in {path}: {exc}") from exc

    logger.info("Loaded %d samples from %s", len(samples), path)
    return samples


def pick_random_sample(samples: Sequence[Sample], rng: np.random.Generator) -> Optional[Sample]:
    """
    Pick a sample uniformly at random.

    Returns:
        The chosen Sample, or None for an empty manifest.
    """
    if not samples:
        return None
    return samples[int(rng.integers(len(samples)))]
