"""Book search backend: message-driven indexing worker and degrading search pipeline."""
