"""
channels — Per-channel delivery backends.

Each channel module exposes:
    send(subscription, notification) → DeliveryResult

Channels are stateless functions. Concurrency and failure isolation
live in alerts.fanout.
"""
