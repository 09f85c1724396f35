"""
Match core services.
"""
