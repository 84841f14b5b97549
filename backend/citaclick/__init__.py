"""
CitaClick billing core.

Subscription lifecycle, plan entitlements, billing-provider reconciliation
and the per-request access gate for the CitaClick appointment platform.
"""

__version__ = "0.1.0"
