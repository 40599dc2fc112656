"""Catalog documents: functions and repositories.

These are read-only snapshots of what the registry stores. Documents use
the catalog's camelCase field names (``publicId``, ``baseImage``,
``fileExtension``); ``from_dict`` accepts those and the snake_case
equivalents.

A ``Function`` is frozen: the scheduler resolves it once at dispatch time
and every stage of the execution sees that same snapshot. ``content`` is
inert text, never parsed here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from chicon.core.errors import CapabilityRejected

CAPABILITY_KEYS = ("network", "filesystem")


def _pick(data: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


def _document_id(data: Mapping[str, Any]) -> str:
    value = _pick(data, "publicId", "public_id", "id", "_id")
    if value is None:
        raise ValueError("document has no identifier (publicId/id)")
    return str(value)


@dataclass(frozen=True)
class Environment:
    """Execution context of a function: image, interpreter, script suffix."""

    name: str
    base_image: str
    file_extension: str
    executor: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Environment:
        return cls(
            name=str(_pick(data, "name", default="")),
            base_image=str(_pick(data, "baseImage", "base_image", default="")),
            file_extension=str(_pick(data, "fileExtension", "file_extension", default="")).lstrip("."),
            executor=str(_pick(data, "executor", default="")),
        )

    @property
    def script_name(self) -> str:
        return f"process.{self.file_extension}" if self.file_extension else "process"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "baseImage": self.base_image,
            "fileExtension": self.file_extension,
            "executor": self.executor,
        }


@dataclass(frozen=True)
class Capabilities:
    """Declared upper bound on what a function's script may do.

    Unknown keys and non-boolean values are rejected so a profile can never
    be read as granting something it does not say.
    """

    network: bool = False
    filesystem: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Capabilities:
        unknown = sorted(set(data) - set(CAPABILITY_KEYS))
        if unknown:
            raise CapabilityRejected(
                f"Unknown capability keys: {', '.join(unknown)}",
                context={"keys": unknown},
            )
        for key, value in data.items():
            if not isinstance(value, bool):
                raise CapabilityRejected(
                    f"Capability {key!r} must be a boolean, got {type(value).__name__}",
                    context={"key": key},
                )
        return cls(
            network=data.get("network", False),
            filesystem=data.get("filesystem", False),
        )

    def to_dict(self) -> dict[str, bool]:
        return {"network": self.network, "filesystem": self.filesystem}


@dataclass(frozen=True)
class Function:
    """A named analysis script bound to an environment and a capability profile."""

    id: str
    name: str
    environment: Environment
    capabilities: Capabilities
    content: str = field(repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Function:
        """Build a snapshot from a catalog document.

        Raises:
            CapabilityRejected: If the capability profile is not well-formed.
            ValueError: If the document has no identifier.
        """
        return cls(
            id=_document_id(data),
            name=str(_pick(data, "name", default="")),
            environment=Environment.from_dict(_pick(data, "environment", default={})),
            capabilities=Capabilities.from_dict(_pick(data, "capabilities", default={})),
            content=str(_pick(data, "content", default="")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "publicId": self.id,
            "name": self.name,
            "environment": self.environment.to_dict(),
            "capabilities": self.capabilities.to_dict(),
            "content": self.content,
        }


@dataclass(frozen=True)
class Repository:
    """A remote source checkout used as an analysis target."""

    id: str
    name: str
    url: str
    branch: str | None = None
    directory: str | None = None
    tags: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Repository:
        return cls(
            id=_document_id(data),
            name=str(_pick(data, "name", default="")),
            url=str(_pick(data, "url", default="")),
            branch=_pick(data, "branch") or None,
            directory=_pick(data, "directory") or None,
            tags=frozenset(_pick(data, "tags", default=())),
        )

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def to_dict(self) -> dict[str, Any]:
        return {
            "publicId": self.id,
            "name": self.name,
            "url": self.url,
            "branch": self.branch,
            "directory": self.directory,
            "tags": sorted(self.tags),
        }
