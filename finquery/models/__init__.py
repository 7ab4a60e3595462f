# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Defines request/response schemas for the API.
# These are SEPARATE from the database models (finquery/db/models.py) and
# from the data function schemas (finquery/catalog/schemas.py).
# =============================================================================
