"""glbc: global load balancer controller for federated Kubernetes ingresses."""

__version__ = "0.1.0"

# Lazy imports to avoid loading heavy dependencies for CLI usage
__all__ = [
    "ClusterClient",
    "ControllerManager",
    "ControllerConfig",
    "DNSRecord",
    "Ingress",
]

def __getattr__(name):
    if name == "ClusterClient":
        from .kube import ClusterClient
        return ClusterClient
    elif name == "ControllerManager":
        from .manager import ControllerManager
        return ControllerManager
    elif name == "ControllerConfig":
        from .models import ControllerConfig
        return ControllerConfig
    elif name == "DNSRecord":
        from .models import DNSRecord
        return DNSRecord
    elif name == "Ingress":
        from .models import Ingress
        return Ingress
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
