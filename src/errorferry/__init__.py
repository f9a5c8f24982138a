"""
errorferry: Resilient delivery of captured error events to a collection endpoint.

Quota enforcement, deduplication, retry with backoff, circuit breaking,
batching, compression and durable offline queuing, composed by a single
orchestrator that never lets a delivery failure reach the host application.
"""

__version__ = "0.1.0"
