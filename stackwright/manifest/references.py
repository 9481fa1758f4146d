"""Manifest — Reference resolution engine.

Resolves ``{{outputs.<id>.<field>}}`` and ``{{env.<NAME>}}`` expressions in
resource inputs before they are handed to a provider.

Template syntax:
    {{outputs.<id>.<field>}}    Output field produced by another resource
    {{outputs.<id>}}            Full outputs mapping of another resource
    {{env.<NAME>}}              OS environment variable

Every ``outputs`` reference is also a dependency edge: the graph builder
calls :func:`find_references` to infer them.
"""

from __future__ import annotations

import os
import re
from typing import Any, Iterator, Mapping

from stackwright.exceptions import ReferenceResolutionError
from stackwright.manifest.constants import (
    TEMPLATE_CLOSE,
    TEMPLATE_OPEN,
    TEMPLATE_PREFIX_ENV,
    TEMPLATE_PREFIX_OUTPUTS,
)

_TEMPLATE_RE = re.compile(
    re.escape(TEMPLATE_OPEN)
    + r"\s*(\w+)\.([A-Za-z0-9_-]+)(?:\.([A-Za-z0-9_-]+))?\s*"
    + re.escape(TEMPLATE_CLOSE)
)


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


def find_references(inputs: Any) -> set[str]:
    """Return the ids of every resource referenced by ``{{outputs.<id>...}}``."""
    refs: set[str] = set()
    for text in _iter_strings(inputs):
        for match in _TEMPLATE_RE.finditer(text):
            if match.group(1) == TEMPLATE_PREFIX_OUTPUTS:
                refs.add(match.group(2))
    return refs


def find_unsupported_references(inputs: Any) -> list[str]:
    """Return every expression whose prefix is neither ``outputs`` nor ``env``."""
    supported = (TEMPLATE_PREFIX_OUTPUTS, TEMPLATE_PREFIX_ENV)
    return sorted({
        match.group(0)
        for text in _iter_strings(inputs)
        for match in _TEMPLATE_RE.finditer(text)
        if match.group(1) not in supported
    })


class ReferenceResolver:
    """Resolves reference expressions in resource inputs.

    Usage::

        resolver = ReferenceResolver(outputs={"cluster": {"id": "c-123"}})
        resolved = resolver.resolve({"value": "{{outputs.cluster.id}}.k8s.civo.com"})
        # {"value": "c-123.k8s.civo.com"}

    When *unknown_placeholder* is set, references to outputs that do not
    exist yet resolve to the placeholder instead of raising.  ``plan`` uses
    this to render values that are only known after apply.
    """

    def __init__(
        self,
        outputs: Mapping[str, Mapping[str, Any]] | None = None,
        allow_env: bool = True,
        unknown_placeholder: str | None = None,
    ) -> None:
        self._outputs: Mapping[str, Mapping[str, Any]] = outputs or {}
        self._allow_env = allow_env
        self._placeholder = unknown_placeholder

    def resolve(self, inputs: dict[str, Any]) -> dict[str, Any]:
        """Return a new dict with all reference expressions substituted.

        Raises:
            ReferenceResolutionError: An expression could not be resolved.
        """
        return self._resolve_value(inputs)  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, dict):
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(item) for item in value]
        return value

    def _resolve_string(self, value: str) -> Any:
        """Resolve all expressions in a string.

        A string that is exactly one expression keeps the referenced value's
        type.  Embedded expressions are stringified and interpolated.
        """
        matches = list(_TEMPLATE_RE.finditer(value))
        if not matches:
            return value

        if len(matches) == 1 and matches[0].group(0) == value:
            return self._resolve_expression(
                matches[0].group(1), matches[0].group(2), matches[0].group(3), value
            )

        result = value
        for match in matches:
            resolved = self._resolve_expression(
                match.group(1), match.group(2), match.group(3), match.group(0)
            )
            result = result.replace(match.group(0), str(resolved))
        return result

    def _resolve_expression(
        self, prefix: str, ref: str, field: str | None, original: str
    ) -> Any:
        if prefix == TEMPLATE_PREFIX_OUTPUTS:
            return self._resolve_output(ref, field, original)
        if prefix == TEMPLATE_PREFIX_ENV:
            return self._resolve_env(ref, original)
        raise ReferenceResolutionError(
            original, f"Unknown prefix '{prefix}'. Supported: outputs, env."
        )

    def _resolve_output(self, resource_id: str, field: str | None, original: str) -> Any:
        if resource_id not in self._outputs:
            if self._placeholder is not None:
                return self._placeholder
            raise ReferenceResolutionError(
                original, f"Resource '{resource_id}' has not produced outputs yet."
            )
        outputs = self._outputs[resource_id]
        if field is None:
            return dict(outputs)
        if field not in outputs:
            if self._placeholder is not None:
                return self._placeholder
            raise ReferenceResolutionError(
                original,
                f"Resource '{resource_id}' has no output '{field}'. "
                f"Available outputs: {sorted(outputs.keys())}",
            )
        return outputs[field]

    def _resolve_env(self, name: str, original: str) -> str:
        if not self._allow_env:
            raise ReferenceResolutionError(original, "Environment lookups are disabled.")
        value = os.environ.get(name)
        if value is None:
            raise ReferenceResolutionError(original, f"Environment variable '{name}' is not set.")
        return value
