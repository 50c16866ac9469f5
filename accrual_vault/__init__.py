"""
Accrual Vault

A deposit vault whose receipt token accrues value linearly over time, with
lazy interest materialization, a monotonically decreasing global rate and
hash-chained audit trails.
"""

__version__ = "1.0.0"
