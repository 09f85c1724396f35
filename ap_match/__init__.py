"""
AP three-way match core: invoice vs goods receipt reconciliation, match
exceptions with SLA ownership, and the payment gate.
"""

__version__ = "0.1.0"
