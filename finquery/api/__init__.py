# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - query.py: POST/DELETE /agent/query (answers, streaming, cache clear)
#   - monitoring.py: performance dashboard, load tests, cache statistics
#   - deps.py: session auth, per-scope rate limits, QueryService singleton
#   - middleware.py: request ids and access logging
# =============================================================================
