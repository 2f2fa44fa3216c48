"""Rate limiting adapters.

This package holds the token-bucket admission check and the small interface
the HTTP layer depends on, so the bucket storage can move between process
memory and a shared store without changing the API layer.
"""
