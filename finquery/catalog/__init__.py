# =============================================================================
# Catalog Package — Data Access Functions
# =============================================================================
#   - schemas.py: argument / result models for every function
#   - functions.py: implementations over ReceiptStore + the CATALOG registry
# =============================================================================

from finquery.catalog.functions import CATALOG, CatalogEntry, tool_schemas

__all__ = ["CATALOG", "CatalogEntry", "tool_schemas"]
