"""Business logic services: ingestion, request lifecycle, playback and policy."""
