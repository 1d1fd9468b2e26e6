"""
tracking — Live view of an active alert.

Sub-modules:
    convergence     — Dual-channel acceptance convergence engine
    location_relay  — Periodic position sampling per tracked party
"""
