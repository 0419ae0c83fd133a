from .registry import IdentityRegistry, validate_actor_id

__all__ = ["IdentityRegistry", "validate_actor_id"]
