"""RGB histogram engine (histogram.* namespace)."""
