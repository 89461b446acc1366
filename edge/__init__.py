# =============================================================================
# Fundus Edge Demo - Edge Pipeline Package
# =============================================================================
# This package contains the on-device inference pipeline: model download and
# session init, cooperative image preprocessing, the NPY tensor codec, the
# LRU tensor cache and the inference orchestrator.
# =============================================================================
