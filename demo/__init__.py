# =============================================================================
# Fundus Edge Demo - Demo API Package
# =============================================================================
# This package contains the local FastAPI surface the demo UI talks to. It
# only exposes the on-device pipeline; inference never leaves this process.
# =============================================================================
