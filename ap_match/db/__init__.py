"""
Database engine, sessions and model mixins.
"""
