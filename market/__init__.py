"""Market data: sample aggregation, quote storage and refresh."""
