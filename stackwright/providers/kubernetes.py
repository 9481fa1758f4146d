"""Provider layer — Kubernetes namespaces via kubectl.

Inputs:
    kubeconfig   Kubeconfig document (usually ``{{outputs.cluster.kubeconfig}}``)
    name         Namespace name (defaults to the resource id)
    labels       Optional mapping of labels

Create and update both run ``kubectl apply`` which is idempotent.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from stackwright.exceptions import PermanentProviderError, ProviderResourceNotFoundError
from stackwright.logging import get_logger
from stackwright.providers._process import classify_failure, run_command, temp_file
from stackwright.providers.base import BaseProvider, ResolvedSpec

if TYPE_CHECKING:
    from stackwright.orchestration.state import ResourceState

log = get_logger(__name__)


class NamespaceProvider(BaseProvider):
    KIND = "namespace"
    VERSION = "0.1.0"
    DESCRIPTION = "Kubernetes namespace managed with kubectl"
    OUTPUTS = ("name", "uid", "phase")
    REQUIRED_INPUTS = ("kubeconfig",)

    def __init__(self, kubectl_path: str = "kubectl", timeout: float = 300.0) -> None:
        self._kubectl = kubectl_path
        self._timeout = timeout

    async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
        return await self._apply(spec)

    async def update(self, spec: ResolvedSpec, observed: dict[str, Any]) -> dict[str, Any]:
        return await self._apply(spec)

    async def read(self, resource_id: str, state: "ResourceState") -> dict[str, Any]:
        name = _namespace_name(resource_id, state.inputs, state.outputs)
        kubeconfig = self._stored_kubeconfig(resource_id, state)
        with temp_file(kubeconfig, suffix=".kubeconfig") as kubeconfig_path:
            result = await run_command(
                [self._kubectl, "--kubeconfig", kubeconfig_path,
                 "get", "namespace", name, "-o", "json"],
                timeout=self._timeout,
                kind=self.KIND,
                resource_id=resource_id,
            )
        if not result.ok:
            if "notfound" in result.stderr.lower().replace(" ", ""):
                raise ProviderResourceNotFoundError(
                    f"Namespace '{name}' not found",
                    kind=self.KIND,
                    resource_id=resource_id,
                )
            raise classify_failure(result, kind=self.KIND, resource_id=resource_id)
        return _outputs_from_object(result.stdout, name)

    async def delete(self, resource_id: str, state: "ResourceState") -> None:
        name = _namespace_name(resource_id, state.inputs, state.outputs)
        kubeconfig = self._stored_kubeconfig(resource_id, state)
        with temp_file(kubeconfig, suffix=".kubeconfig") as kubeconfig_path:
            result = await run_command(
                [self._kubectl, "--kubeconfig", kubeconfig_path,
                 "delete", "namespace", name, "--ignore-not-found", "--wait=true"],
                timeout=self._timeout,
                kind=self.KIND,
                resource_id=resource_id,
            )
        if not result.ok:
            raise classify_failure(result, kind=self.KIND, resource_id=resource_id)
        log.info("namespace_deleted", namespace=name)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _apply(self, spec: ResolvedSpec) -> dict[str, Any]:
        name = _namespace_name(spec.id, spec.inputs, {})
        kubeconfig = str(spec.require("kubeconfig"))
        document = {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": name, "labels": dict(spec.get("labels") or {})},
        }
        with temp_file(kubeconfig, suffix=".kubeconfig") as kubeconfig_path:
            result = await run_command(
                [self._kubectl, "--kubeconfig", kubeconfig_path,
                 "apply", "-f", "-", "-o", "json"],
                stdin=json.dumps(document),
                timeout=self._timeout,
                kind=self.KIND,
                resource_id=spec.id,
            )
        if not result.ok:
            raise classify_failure(result, kind=self.KIND, resource_id=spec.id)
        log.info("namespace_applied", namespace=name)
        return _outputs_from_object(result.stdout, name)

    def _stored_kubeconfig(self, resource_id: str, state: "ResourceState") -> str:
        kubeconfig = state.inputs.get("kubeconfig")
        if not kubeconfig:
            raise PermanentProviderError(
                "No kubeconfig recorded for this namespace",
                kind=self.KIND,
                resource_id=resource_id,
            )
        return str(kubeconfig)


def _namespace_name(
    resource_id: str, inputs: dict[str, Any], outputs: dict[str, Any]
) -> str:
    return str(outputs.get("name") or inputs.get("name") or resource_id)


def _outputs_from_object(stdout: str, name: str) -> dict[str, Any]:
    try:
        obj = json.loads(stdout) if stdout.strip() else {}
    except json.JSONDecodeError:
        obj = {}
    metadata = obj.get("metadata", {})
    return {
        "name": metadata.get("name", name),
        "uid": metadata.get("uid", ""),
        "phase": obj.get("status", {}).get("phase", "Active"),
        "labels": metadata.get("labels", {}),
    }
