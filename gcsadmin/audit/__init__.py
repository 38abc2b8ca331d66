"""Local audit log store, remote ingestion and export."""
