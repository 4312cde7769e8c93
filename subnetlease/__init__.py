"""Per-host subnet lease allocation, watching and renewal for overlay networks."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "subnet",
    "watch",
    "kube_annotations",
    "etcd_registry",
    "etcd_manager",
    "kube_lease",
    "kube_manager",
]