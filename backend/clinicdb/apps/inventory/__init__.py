"""
Inventory module.

Per-clinic stock ledger: one row per product with lot / expiration
bookkeeping. All stock mutations go through `services.InventoryLedger`.
"""
