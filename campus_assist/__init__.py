"""
Backend package for the campus assistance service.

This package provides a FastAPI application with entity-store, storage,
identity and event-queue abstractions so the same request lifecycle runs
against in-memory backends in development and hosted services in production.
"""
