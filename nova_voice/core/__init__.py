"""Cross-cutting helpers: logging, request tracing, error taxonomy."""
