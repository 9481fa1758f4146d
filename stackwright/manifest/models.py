"""Manifest — Canonical data models.

Resource declarations are defined here and validated through Pydantic v2.
Do not add business logic here — only data shapes and their invariants.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stackwright.manifest.constants import (
    DEFAULT_STACK_NAME,
    KIND_MAX_LEN,
    RESOURCE_ID_MAX_LEN,
)

_RESOURCE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1," + str(RESOURCE_ID_MAX_LEN) + r"}$")
_KIND_RE = re.compile(r"^[a-z][a-z0-9-]{0," + str(KIND_MAX_LEN - 1) + r"}$")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ResourceStatus(str, Enum):
    """Persisted lifecycle status of a resource."""

    PENDING = "pending"
    CREATED = "created"
    FAILED = "failed"
    DELETED = "deleted"


class ChangeAction(str, Enum):
    """Provider operation chosen for a resource during a run."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class OutcomeResult(str, Enum):
    """Terminal result of a resource within one run."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


class ResourceSpec(BaseModel):
    """A named, typed resource declaration.

    ``inputs`` values are literals or strings holding ``{{outputs.<id>.<field>}}``
    references.  ``depends_on`` adds explicit ordering edges on top of the
    edges inferred from those references.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    id: str
    kind: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    depends_on: frozenset[str] = Field(default_factory=frozenset, alias="dependsOn")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not _RESOURCE_ID_RE.match(v):
            raise ValueError(
                f"Resource id '{v}' must match ^[A-Za-z0-9_-]+$ "
                f"and be at most {RESOURCE_ID_MAX_LEN} characters."
            )
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if not _KIND_RE.match(v):
            raise ValueError(f"Kind '{v}' must be lowercase kebab-case (e.g. 'dns-record').")
        return v

    @field_validator("depends_on", mode="before")
    @classmethod
    def coerce_depends_on(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            return frozenset([v])
        return v


class Manifest(BaseModel):
    """A stack of resource declarations.

    Accepts ``resources`` either as a list of specs or as a mapping of
    resource id to ``{kind, inputs, dependsOn}``.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = DEFAULT_STACK_NAME
    resources: list[ResourceSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def resources_from_mapping(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        resources = data.get("resources")
        if isinstance(resources, dict):
            converted = []
            for resource_id, body in resources.items():
                if not isinstance(body, dict):
                    raise ValueError(f"Resource '{resource_id}' must be a mapping.")
                converted.append({"id": str(resource_id), **body})
            data = {**data, "resources": converted}
        return data

    def get(self, resource_id: str) -> ResourceSpec | None:
        return next((r for r in self.resources if r.id == resource_id), None)
