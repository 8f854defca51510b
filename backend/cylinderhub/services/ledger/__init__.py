"""Payment timeline ledger package."""
