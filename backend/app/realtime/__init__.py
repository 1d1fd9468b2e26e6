"""
realtime — Row-change event channel.

Sub-modules:
    events     — RowChange payloads, event kinds, channel states
    transport  — Local (asyncio) and Redis pub/sub transports
    channel    — ChannelManager: filtered subscriptions + reconnect backoff
"""
