"""Orchestration layer — Resource registry.

Holds the declared resource specifications of one planning pass.  Purely
in memory; duplicate ids are rejected at declaration time.
"""

from __future__ import annotations

from typing import Iterator

from stackwright.exceptions import DuplicateResourceError, ResourceNotFoundError
from stackwright.manifest.models import Manifest, ResourceSpec


class ResourceRegistry:
    """Ordered map of resource id to :class:`ResourceSpec`.

    Usage::

        registry = ResourceRegistry.from_manifest(manifest)
        spec = registry.get("cluster")
    """

    def __init__(self) -> None:
        self._specs: dict[str, ResourceSpec] = {}

    @classmethod
    def from_manifest(cls, manifest: Manifest) -> "ResourceRegistry":
        registry = cls()
        for spec in manifest.resources:
            registry.declare(spec)
        return registry

    def declare(self, spec: ResourceSpec) -> None:
        """Add *spec*.

        Raises:
            DuplicateResourceError: A resource with the same id is declared.
        """
        if spec.id in self._specs:
            raise DuplicateResourceError(spec.id)
        self._specs[spec.id] = spec

    def get(self, resource_id: str) -> ResourceSpec:
        """Return the spec for *resource_id*.

        Raises:
            ResourceNotFoundError: No such resource is declared.
        """
        try:
            return self._specs[resource_id]
        except KeyError:
            raise ResourceNotFoundError(resource_id) from None

    def list(self) -> list[ResourceSpec]:
        return list(self._specs.values())

    def ids(self) -> list[str]:
        return list(self._specs)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self._specs.values())
