"""Payment webhook reconciliation core."""
