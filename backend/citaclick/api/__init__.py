"""
HTTP API for the billing core.
"""
