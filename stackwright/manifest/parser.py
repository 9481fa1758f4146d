"""Manifest — Parser.

Responsibilities:
  1. Accept raw input (str, bytes, dict) or a file path
  2. Deserialise YAML (JSON is a subset and parses the same way)
  3. Validate the document against :class:`Manifest`
  4. Return a fully-typed Manifest

The parser does NOT check references, kinds or cycles — that is the graph
builder's job.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stackwright.exceptions import ManifestParseError, ManifestValidationError
from stackwright.logging import get_logger
from stackwright.manifest.models import Manifest

_log = get_logger(__name__)


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if isinstance(key, (str, int, float, bool)) and key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key '{key}'",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class ManifestParser:
    """Stateless manifest parser.

    Usage::

        parser = ManifestParser()
        manifest = parser.parse(Path("stack.yaml").read_text())
    """

    def parse(self, raw: str | bytes | dict[str, Any], source: str | None = None) -> Manifest:
        """Parse and validate *raw* into a :class:`Manifest`.

        Raises:
            ManifestParseError: The document is malformed or not a mapping.
            ManifestValidationError: Pydantic validation failed.
        """
        data = self._deserialise(raw, source)
        manifest = self._validate(data)
        _log.debug(
            "manifest_parsed",
            source=source,
            stack=manifest.name,
            resources=len(manifest.resources),
        )
        return manifest

    def _deserialise(self, raw: str | bytes | dict[str, Any], source: str | None) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw

        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ManifestParseError(
                    f"Manifest is not valid UTF-8: {exc}", source=source
                ) from exc

        try:
            data = yaml.load(raw, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as exc:
            raise ManifestParseError(f"Invalid manifest: {exc}", source=source) from exc

        if not isinstance(data, dict):
            raise ManifestParseError(
                f"Expected a mapping at the top level, got {type(data).__name__}.",
                source=source,
            )
        return data

    def _validate(self, data: dict[str, Any]) -> Manifest:
        try:
            return Manifest.model_validate(data)
        except ValidationError as exc:
            errors = exc.errors(include_url=False)
            messages = "; ".join(
                f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', '')}"
                for e in errors
            )
            raise ManifestValidationError(
                f"Manifest validation failed: {messages}",
                errors=[{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors],
            ) from exc

    @staticmethod
    def to_dict(manifest: Manifest) -> dict[str, Any]:
        """Serialise a manifest back to the id-keyed mapping form."""
        return {
            "name": manifest.name,
            "resources": {
                spec.id: {
                    "kind": spec.kind,
                    "inputs": spec.inputs,
                    "dependsOn": sorted(spec.depends_on),
                }
                for spec in manifest.resources
            },
        }

    @staticmethod
    def to_json(manifest: Manifest, indent: int = 2) -> str:
        return json.dumps(ManifestParser.to_dict(manifest), indent=indent)


def load_manifest(path: Path) -> Manifest:
    """Read and parse the manifest file at *path*."""
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ManifestParseError(
            f"Manifest {path} is not valid UTF-8: {exc}", source=str(path)
        ) from exc
    except OSError as exc:
        raise ManifestParseError(f"Cannot read manifest {path}: {exc}", source=str(path)) from exc
    return ManifestParser().parse(text, source=str(path))
