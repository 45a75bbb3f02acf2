"""
Test fixtures package.

This package provides reusable pytest fixtures for testing the recipe stream
core. Import fixtures into conftest.py to make them available to all tests.

Available fixture modules:
- database: Async SQLAlchemy engine and session fixtures backed by SQLite
- storage: In-memory backends, registry, adapter and service wiring
"""
