"""Event models, deduplication, validation and the scrape pipeline."""
