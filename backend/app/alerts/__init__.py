"""
alerts — Panic alert lifecycle, contacts and notification fan-out.

Sub-modules:
    channels/       — Per-channel delivery backends (web push)
    lifecycle       — Create / cancel / resolve, acknowledgments, location appends
    rate_limiter    — Supersession of older alerts and the 30 s cool-down
    fanout          — Concurrent push delivery to notified contacts
    contacts        — Contact list and invite round-trip (verification)
    models          — Data structures shared across the system
"""
