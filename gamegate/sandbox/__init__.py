"""Isolation boundary: one child interpreter per play instance.

The runner side (`runner`, `runtime`) is imported inside the child and must stay
free of third-party imports.
"""
