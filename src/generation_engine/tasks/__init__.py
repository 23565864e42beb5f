"""Generation task lifecycle: validation, pricing, persistence, polling and workers."""
