from __future__ import annotations

from typing import Any, Dict, List

GuardResult = List[Dict[str, str]]


def _get_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def guard_request_has_products(
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    if not _get_value(before_obj, "products_used"):
        return [{"field": "products_used", "reason": "at least one product line required"}]
    return []


def guard_invoice_has_lines(
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    if not _get_value(before_obj, "lines"):
        return [{"field": "lines", "reason": "at least one product line required"}]
    return []
