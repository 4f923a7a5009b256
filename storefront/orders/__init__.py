"""Order ledger: models, persistence and webhook-driven reconciliation."""
