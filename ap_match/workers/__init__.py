"""
Background workers for match recomputation and escalation sweeps.
"""
