"""Host-port to guest-port mapping normalization.

Two passes turn the flat list of published ports into what the active
backend's forwarder can consume: ``coalesce_ports`` folds consecutive
mappings into ranges and ``convert_port_mappings`` rewrites host addresses
for the machine type in use.
"""

from __future__ import annotations

import ipaddress
from typing import Dict, Iterable, List, Optional, Tuple

from machine_runner.constants import REMOTE_VM_TYPES, WSL_VIRT
from machine_runner.models import PortMapping

_SPLITTABLE_PROTOCOLS = {"tcp", "udp"}


def coalesce_ports(mappings: Optional[Iterable[PortMapping]]) -> Optional[List[PortMapping]]:
    """Merge runs of consecutive mappings into ranged entries.

    Two mappings join when they share protocol and host IP and both the host
    and the container port advance by exactly one. The result keeps the
    input order of the first entry of every merged range.
    """
    items = list(mappings or [])
    if not items:
        return None

    groups: Dict[Tuple[str, str], List[Tuple[int, PortMapping]]] = {}
    for index, mapping in enumerate(items):
        groups.setdefault((mapping.protocol, mapping.host_ip), []).append((index, mapping))

    merged: List[Tuple[int, PortMapping]] = []
    for members in groups.values():
        members.sort(key=lambda item: (item[1].container_port, item[1].host_port))
        start_index, current = members[0]
        current = current._replace(range=1)
        for index, mapping in members[1:]:
            if (
                mapping.host_port == current.host_port + current.range
                and mapping.container_port == current.container_port + current.range
            ):
                current = current._replace(range=current.range + 1)
                continue
            merged.append((start_index, current))
            start_index, current = index, mapping._replace(range=1)
        merged.append((start_index, current))

    merged.sort(key=lambda item: item[0])
    return [mapping for _, mapping in merged]


def _split_dual_stack(mapping: PortMapping) -> List[PortMapping]:
    if mapping.protocol not in _SPLITTABLE_PROTOCOLS or not mapping.host_ip:
        return [mapping]
    try:
        address = ipaddress.ip_address(mapping.host_ip)
    except ValueError:
        return [mapping]

    if address.is_unspecified:
        ipv4, ipv6 = "0.0.0.0", "::"
    elif address.version == 6 and address.is_loopback:
        ipv4, ipv6 = "127.0.0.1", "::1"
    else:
        return [mapping]
    return [
        mapping._replace(host_ip=ipv4, protocol=f"{mapping.protocol}4"),
        mapping._replace(host_ip=ipv6, protocol=f"{mapping.protocol}6"),
    ]


def convert_port_mappings(mappings: Iterable[PortMapping], vm_type: Optional[str] = None) -> List[PortMapping]:
    """Rewrite mappings for the forwarder of the given machine type.

    The subsystem backend binds IPv4 and IPv6 separately, so wildcard and
    IPv6 loopback binds over an unqualified protocol become one entry per
    family; ``udp`` splits the same way as ``tcp``. Hypervisor backends
    forward from a user-space stack that knows nothing about host addresses,
    so the host IP is cleared.
    """
    items = list(mappings)
    if not vm_type:
        return items
    if vm_type == WSL_VIRT:
        converted: List[PortMapping] = []
        for mapping in items:
            converted.extend(_split_dual_stack(mapping))
        return converted
    if vm_type in REMOTE_VM_TYPES:
        return [mapping._replace(host_ip="") for mapping in items]
    return items
