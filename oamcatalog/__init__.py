"""Reconcilers and admission webhook handlers for OAM sidecar, rollout and PodSpec resources."""

__version__ = "0.1.0"
__all__ = ["api", "sidecar", "rollout", "podspec", "webhook"]