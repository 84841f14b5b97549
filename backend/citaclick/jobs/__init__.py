"""
Reconciliation jobs run by the subscription scheduler or from the command line.
"""
