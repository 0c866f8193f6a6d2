"""
Cache package for Billing Service.

Holds the last successfully resolved identity per wallet pair so the
degraded read path can answer while the store is unreachable.
"""
