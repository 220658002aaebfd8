# backend/clinicdb/__init__.py
"""
Import ORM models from each app so that Base.metadata.create_all() sees
every table and relationship strings resolve.

The actual model classes are kept in clinicdb/apps/*/models.py.
"""

from .apps.clinics import models as clinics_models            # tenants
from .apps.catalog import models as catalog_models            # shared product catalog
from .apps.inventory import models as inventory_models        # ledger rows + lots
from .apps.patients import models as patients_models          # patients + treatment history
from .apps.treatments import models as treatments_models      # treatment requests
from .apps.invoices import models as invoices_models          # supplier invoices
from .apps.audit import models as audit_models                # audit trail

__all__ = [
    "clinics_models",
    "catalog_models",
    "inventory_models",
    "patients_models",
    "treatments_models",
    "invoices_models",
    "audit_models",
]
