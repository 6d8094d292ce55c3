from .policy import AllowAllPolicy, PolicyEngine, StaticGrantPolicy

__all__ = ["AllowAllPolicy", "PolicyEngine", "StaticGrantPolicy"]
