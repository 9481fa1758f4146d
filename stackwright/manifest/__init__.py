"""Manifest layer — resource declarations, parsing and reference resolution."""

from stackwright.manifest.models import (
    ChangeAction,
    Manifest,
    OutcomeResult,
    ResourceSpec,
    ResourceStatus,
)
from stackwright.manifest.parser import ManifestParser, load_manifest
from stackwright.manifest.references import ReferenceResolver, find_references

__all__ = [
    "ChangeAction",
    "Manifest",
    "ManifestParser",
    "OutcomeResult",
    "ReferenceResolver",
    "ResourceSpec",
    "ResourceStatus",
    "find_references",
    "load_manifest",
]
