"""
Core package — cross-cutting concerns.

Modules:
    config          — settings (env vars / .env) for every timing and backend choice
    logging_config  — structured JSON / pretty logging with request context
    errors          — PanicAlertError hierarchy & FastAPI handlers
    middleware      — correlation ids, timing, caller context
    health          — store / transport / channel health aggregation
    database        — async SQLAlchemy engine & session factory
    tasks           — TaskScope / CancelToken for session-owned background work
"""
