"""db_sandbox - Local disposable database instances.

Manages native database engine processes (PostgreSQL, MySQL, Redis, ...)
as named, isolated containers under one user-owned directory tree.
"""

__version__ = "0.1.0"
