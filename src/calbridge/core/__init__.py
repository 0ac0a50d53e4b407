"""Cross-cutting infrastructure: logging, metrics, tracing and the write queue."""
