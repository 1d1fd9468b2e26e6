"""
store — Persistence behind one predicate-filtered interface.

Sub-modules:
    base         — StoreBackend ABC, Filter / Order predicates, store errors
    memory       — In-memory backend (development, tests)
    tables       — SQLAlchemy ORM tables
    sql          — SQLAlchemy async backend
    alert_store  — Typed alert / contact / response / location operations
"""
