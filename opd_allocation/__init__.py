"""
OPD Token Allocation Service

A FastAPI-based service that allocates doctor appointment slots to competing
requesters by priority, with displacement of lower-priority occupants,
a per-doctor waiting queue, cancellation recovery and emergency overrides.
"""

__version__ = "1.0.0"
