from .policy import PolicyEngine, RolePolicyEngine

__all__ = ["PolicyEngine", "RolePolicyEngine"]
