# ------------------------------------------
# Logical destinations
# ------------------------------------------
STOCK_DEDUCTION = "stock-deduction"    # Order confirmed, catalog must subtract the items
STOCK_RESTORE   = "stock-restore"      # Confirmed order cancelled, catalog must add the items back

STOCK_DESTINATIONS = (STOCK_DEDUCTION, STOCK_RESTORE)


def normalize_destination(name: str, prefix: str = "") -> str:
    """Queue and topic names are lowercase with hyphens on every transport."""
    normalized = name.strip().lower().replace("_", "-").replace(" ", "-")
    if not normalized:
        raise ValueError("Destination name cannot be empty")
    return f"{prefix}{normalized}" if prefix else normalized
