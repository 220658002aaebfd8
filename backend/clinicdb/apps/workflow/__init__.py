from .engine import apply_transition, ensure_transition
from .registry import WORKFLOWS

__all__ = ["WORKFLOWS", "apply_transition", "ensure_transition"]
