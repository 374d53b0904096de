"""
Control Plane Job Engine

A durably persisted, tenant-scoped job queue with a polling worker, retry
semantics and a webhook delivery consumer with its own backoff and
disable-on-failure policy.
"""

__version__ = "1.0.0"
