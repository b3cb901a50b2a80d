"""Site analytics: event intake, durable job queue and daily aggregation worker."""
