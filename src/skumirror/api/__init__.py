"""
HTTP service exposing the existence check and materialize operations.
"""
