"""Import reconciliation services.

Leaves first: normalizer -> similarity -> matching -> conflicts -> decisions -> execution.
"""
