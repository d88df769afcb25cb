"""Import all SQLAlchemy ORM models so the metadata graph is complete."""

from __future__ import annotations

# Import ORM modules for side effects so models register with Base.metadata.
import coursegen.schema.jobs  # noqa: F401
