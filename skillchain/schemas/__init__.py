"""Pydantic Schemas: validated shapes for backend payloads and cached state.

Invariants:
    - Schemas validate at system boundary (backend responses, persisted cache)
    - Domain types from core/ used for enum fields
"""
