"""
Request platform: per-request context and the access gate chain.
"""
