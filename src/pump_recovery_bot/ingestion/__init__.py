"""Feed ingestion: records, queueing, routing and the token registry."""
