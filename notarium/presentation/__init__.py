"""Presentation layer: FastAPI application."""
