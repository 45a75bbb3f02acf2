"""Cross-cutting utilities: logging, encryption, alerts, subprocess and workspace helpers.

Utilities should be pure functions or singletons without business logic.
"""
