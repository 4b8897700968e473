"""Application services: one per engine component."""
