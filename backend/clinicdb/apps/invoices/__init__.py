"""
Supplier invoices.

An approved invoice is the only way stock enters the ledger besides manual
adjustments; its lines are applied once, when the invoice is first approved.
"""
