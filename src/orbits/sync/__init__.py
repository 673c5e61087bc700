"""Local contacts and Messages ingestion, enrichment and reconciliation."""
