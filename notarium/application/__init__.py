"""Application layer: orchestration services and the event bus."""
