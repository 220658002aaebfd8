from __future__ import annotations

from .guards import guard_invoice_has_lines, guard_request_has_products

# entity_type -> {"transitions": {from_state: {to_state: [guards]}}}
# A state missing from a from_state's map is not reachable from it.
WORKFLOWS = {
    "treatment_request": {
        "transitions": {
            "pending": {
                "consumed": [guard_request_has_products],
                "cancelled": [],
            },
            "consumed": {},
            "cancelled": {},
        }
    },
    "supplier_invoice": {
        # Re-entering the same state is accepted and has no effect on stock;
        # replenishment is keyed on the invoice's stock_applied_at marker.
        "transitions": {
            "pending": {
                "approved": [guard_invoice_has_lines],
                "rejected": [],
            },
            "approved": {
                "approved": [],
                "rejected": [],
            },
            "rejected": {
                "rejected": [],
                "approved": [guard_invoice_has_lines],
            },
        }
    },
    "product": {
        "transitions": {
            "pending": {"approved": []},
            "approved": {},
        }
    },
}
