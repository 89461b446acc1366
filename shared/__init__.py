# =============================================================================
# Fundus Edge Demo - Shared Package
# =============================================================================
# Data contracts shared by the edge pipeline and the local demo API.
# =============================================================================
