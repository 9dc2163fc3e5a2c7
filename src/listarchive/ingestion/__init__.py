"""Mail ingestion sources."""
