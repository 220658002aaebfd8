"""
Treatment requests.

A request records the products a procedure will use. Stock leaves the
ledger only when the request is consumed.
"""
