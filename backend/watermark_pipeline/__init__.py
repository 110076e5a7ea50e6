"""
Watermark Pipeline Backend — Application Package Initializer
==============================================================

What: Marks the `watermark_pipeline` directory as a Python package.
Who:  Used by Alembic, pytest, and uvicorn (`watermark_pipeline.main:app`).

Architecture Note:
    The backend follows a layered architecture:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   Services (Pipeline, Worker,       │  ← Signing, remote calls, task
    │   Resolver, Policy Adapter)         │    lifecycle, provenance
    ├─────────────────────────────────────┤
    │    Repositories (TaskStore, ...)    │  ← SQL or in-memory
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    └─────────────────────────────────────┘

    Services never touch a global session; they receive repositories, which
    lets the background worker and the tests swap in other implementations.
"""

__version__ = "1.0.0"
