# =============================================================================
# Fundus Edge Demo - Maintenance Scripts
# =============================================================================
