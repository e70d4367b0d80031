"""
Telehealth subscription engine.

Subscription lifecycle, entitlement metering, billing orchestration and
payment-processor webhook reconciliation.
"""

__version__ = "1.0.0"
