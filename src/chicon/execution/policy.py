"""Capability policy — turns a capability profile into sandbox restrictions.

Manifesto:
    The sandbox never branches on raw booleans. A profile is evaluated once
    into one of four named ``SandboxProfile`` variants, and the resulting
    immutable ``SandboxPolicy`` is what the container layer consumes. Each
    variant is the *most restrictive* configuration that still satisfies
    the profile.

Architecture:

    .. code-block:: text

        Capabilities(network, filesystem)
                │  policy_for()          (pure, total: 4 cases)
                ▼
        ┌───────────────┬──────────┬──────────────┬─────────────────────┐
        │ SandboxProfile│ network  │ root fs      │ result mount        │
        ├───────────────┼──────────┼──────────────┼─────────────────────┤
        │ SEALED        │ none     │ read-only    │ single file (rw)    │
        │ NETWORK_ONLY  │ bridge   │ read-only    │ single file (rw)    │
        │ FILESYSTEM    │ none     │ writable     │ directory (rw)      │
        │               │          │ + scratch    │                     │
        │ OPEN          │ bridge   │ writable     │ directory (rw)      │
        │               │          │ + scratch    │                     │
        └───────────────┴──────────┴──────────────┴─────────────────────┘

    ``network=False`` maps to a container with no network namespace
    interfaces at all (``--network none``): no DNS, no sockets, nothing a
    script could reconfigure around. The repository checkout is always
    mounted read-only.

Tags:
    chicon, execution, sandbox, capabilities, policy

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from chicon.models import Capabilities


class SandboxProfile(str, Enum):
    """Closed set of sandbox configurations, one per capability combination."""

    SEALED = "sealed"
    NETWORK_ONLY = "network_only"
    FILESYSTEM_ONLY = "filesystem_only"
    OPEN = "open"


class NetworkMode(str, Enum):
    NONE = "none"
    BRIDGE = "bridge"


@dataclass(frozen=True)
class SandboxPolicy:
    """Immutable sandbox restrictions derived from a capability profile.

    Attributes:
        profile: The named variant this policy was built from.
        network: ``none`` for complete isolation, ``bridge`` for egress.
        read_only_rootfs: Container root filesystem mounted read-only.
        scratch: A writable tmpfs scratch area is mounted.
        result_dir_writable: The whole result directory is writable;
            otherwise only the single result file is mounted.
    """

    profile: SandboxProfile
    network: NetworkMode
    read_only_rootfs: bool
    scratch: bool
    result_dir_writable: bool

    @property
    def allows_network(self) -> bool:
        return self.network is NetworkMode.BRIDGE

    @property
    def allows_filesystem(self) -> bool:
        return not self.read_only_rootfs


_POLICIES: dict[tuple[bool, bool], SandboxPolicy] = {
    (False, False): SandboxPolicy(
        profile=SandboxProfile.SEALED,
        network=NetworkMode.NONE,
        read_only_rootfs=True,
        scratch=False,
        result_dir_writable=False,
    ),
    (True, False): SandboxPolicy(
        profile=SandboxProfile.NETWORK_ONLY,
        network=NetworkMode.BRIDGE,
        read_only_rootfs=True,
        scratch=False,
        result_dir_writable=False,
    ),
    (False, True): SandboxPolicy(
        profile=SandboxProfile.FILESYSTEM_ONLY,
        network=NetworkMode.NONE,
        read_only_rootfs=False,
        scratch=True,
        result_dir_writable=True,
    ),
    (True, True): SandboxPolicy(
        profile=SandboxProfile.OPEN,
        network=NetworkMode.BRIDGE,
        read_only_rootfs=False,
        scratch=True,
        result_dir_writable=True,
    ),
}


def policy_for(capabilities: Capabilities) -> SandboxPolicy:
    """Return the most restrictive policy satisfying *capabilities*."""
    return _POLICIES[(capabilities.network, capabilities.filesystem)]


def policy_from_mapping(profile: Mapping[str, Any]) -> SandboxPolicy:
    """Evaluate a raw capability mapping.

    Raises:
        CapabilityRejected: On unknown keys or non-boolean values.
    """
    return policy_for(Capabilities.from_dict(profile))
