"""Persistence adapters: SQLAlchemy async models, repositories and unit of work."""
