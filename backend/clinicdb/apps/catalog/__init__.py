"""
Product catalog.

Shared, approval-gated list of supply products. Unknown products referenced
by a clinic's invoice are provisioned here as `pending`.
"""
