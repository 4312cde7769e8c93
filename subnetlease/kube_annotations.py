"""Node annotation names used by the Kubernetes subnet manager."""

from __future__ import annotations

import re
from dataclasses import dataclass

_PREFIX_RE = re.compile(r"(?:[a-z0-9_-]+\.)+[a-z0-9_-]+/(?:[a-z0-9_-]+-)?\Z")


@dataclass(frozen=True)
class Annotations:
    """Full annotation keys derived from one prefix."""

    subnet_kube_managed: str
    backend_data: str
    backend_v6_data: str
    backend_type: str
    backend_public_ip: str
    backend_public_ipv6: str
    backend_public_ip_overwrite: str
    backend_public_ipv6_overwrite: str


def new_annotations(prefix: str) -> Annotations:
    """Build annotation keys from ``prefix`` (``fqdn`` or ``fqdn/name``)."""
    slashes = prefix.count("/")
    if slashes > 1:
        raise ValueError("subnet/kube: prefix can contain at most single slash")
    if slashes == 0:
        prefix += "/"
    if not prefix.endswith(("/", "-")):
        prefix += "-"

    # Kubernetes annotation keys: an FQDN, one slash, then lowercase name characters.
    if _PREFIX_RE.search(prefix) is None:
        raise ValueError("subnet/kube: prefix must be in a format: fqdn/[0-9a-z-_]*")

    return Annotations(
        subnet_kube_managed=prefix + "kube-subnet-manager",
        backend_data=prefix + "backend-data",
        backend_v6_data=prefix + "backend-v6-data",
        backend_type=prefix + "backend-type",
        backend_public_ip=prefix + "public-ip",
        backend_public_ipv6=prefix + "public-ipv6",
        backend_public_ip_overwrite=prefix + "public-ip-overwrite",
        backend_public_ipv6_overwrite=prefix + "public-ipv6-overwrite",
    )