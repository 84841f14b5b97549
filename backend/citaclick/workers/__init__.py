"""
Long-running background workers.
"""
