"""Infrastructure layer package.

Implements Port interfaces with concrete adapters (PostgreSQL, in-memory).
Brain and Tool layers MUST NOT import from this package directly.
"""
