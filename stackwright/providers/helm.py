"""Provider layer — Helm chart releases via the helm CLI.

Inputs:
    chart             Chart name in the repository (e.g. ``kube-prometheus-stack``)
    repo              Chart repository URL
    version           Pinned chart version
    kubeconfig        Kubeconfig document of the target cluster
    namespace         Release namespace (default ``default``)
    release           Release name (defaults to the resource id)
    values            Mapping passed to the chart as a values file
    create_namespace  Pass ``--create-namespace`` (default false)
    wait              Pass ``--wait`` (default true)
    helm_timeout      Value for helm's own ``--timeout`` (default ``10m``)

``repo`` and ``version`` are mandatory: an unpinned chart cannot converge,
so an empty value is rejected before any provider call.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import yaml

from stackwright.exceptions import (
    InvalidSpecError,
    PermanentProviderError,
    ProviderResourceNotFoundError,
)
from stackwright.logging import get_logger
from stackwright.manifest.models import ResourceSpec
from stackwright.providers._process import classify_failure, run_command, temp_file
from stackwright.providers.base import BaseProvider, ResolvedSpec

if TYPE_CHECKING:
    from stackwright.orchestration.state import ResourceState

log = get_logger(__name__)

_DEFAULT_NAMESPACE = "default"
_DEFAULT_HELM_TIMEOUT = "10m"


class ChartProvider(BaseProvider):
    KIND = "chart"
    VERSION = "0.1.0"
    DESCRIPTION = "Helm chart release installed with helm upgrade --install"
    OUTPUTS = ("release", "namespace", "revision", "status", "chart", "version", "app_version")
    REQUIRED_INPUTS = ("chart", "repo", "version", "kubeconfig")

    def __init__(self, helm_path: str = "helm", timeout: float = 900.0) -> None:
        self._helm = helm_path
        self._timeout = timeout

    def validate(self, spec: ResourceSpec) -> None:
        super().validate(spec)
        values = spec.inputs.get("values")
        if values is not None and not isinstance(values, dict):
            self._reject(spec, "input 'values' must be a mapping")

    async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
        return await self._upgrade_install(spec)

    async def update(self, spec: ResolvedSpec, observed: dict[str, Any]) -> dict[str, Any]:
        return await self._upgrade_install(spec)

    async def read(self, resource_id: str, state: "ResourceState") -> dict[str, Any]:
        release, namespace = _release_and_namespace(resource_id, state.inputs)
        kubeconfig = self._stored_kubeconfig(resource_id, state)
        with temp_file(kubeconfig, suffix=".kubeconfig") as kubeconfig_path:
            result = await run_command(
                [self._helm, "status", release,
                 "--namespace", namespace,
                 "--kubeconfig", kubeconfig_path,
                 "--output", "json"],
                timeout=self._timeout,
                kind=self.KIND,
                resource_id=resource_id,
            )
        if not result.ok:
            if "not found" in result.stderr.lower():
                raise ProviderResourceNotFoundError(
                    f"Release '{release}' not found in namespace '{namespace}'",
                    kind=self.KIND,
                    resource_id=resource_id,
                )
            raise classify_failure(result, kind=self.KIND, resource_id=resource_id)
        return _outputs_from_release(result.stdout, release, namespace)

    async def delete(self, resource_id: str, state: "ResourceState") -> None:
        release, namespace = _release_and_namespace(resource_id, state.inputs)
        kubeconfig = self._stored_kubeconfig(resource_id, state)
        with temp_file(kubeconfig, suffix=".kubeconfig") as kubeconfig_path:
            result = await run_command(
                [self._helm, "uninstall", release,
                 "--namespace", namespace,
                 "--kubeconfig", kubeconfig_path,
                 "--wait"],
                timeout=self._timeout,
                kind=self.KIND,
                resource_id=resource_id,
            )
        if not result.ok:
            if "not found" in result.stderr.lower():
                log.info("release_already_absent", release=release, namespace=namespace)
                return
            raise classify_failure(result, kind=self.KIND, resource_id=resource_id)
        log.info("release_uninstalled", release=release, namespace=namespace)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _upgrade_install(self, spec: ResolvedSpec) -> dict[str, Any]:
        release, namespace = _release_and_namespace(spec.id, spec.inputs)
        chart = str(spec.require("chart"))
        repo = str(spec.require("repo"))
        version = str(spec.require("version"))
        kubeconfig = str(spec.require("kubeconfig"))
        values = yaml.safe_dump(dict(spec.get("values") or {}), sort_keys=True)

        with temp_file(kubeconfig, suffix=".kubeconfig") as kubeconfig_path, \
                temp_file(values, suffix=".yaml") as values_path:
            args = [
                self._helm, "upgrade", "--install", release, chart,
                "--repo", repo,
                "--version", version,
                "--namespace", namespace,
                "--kubeconfig", kubeconfig_path,
                "--values", values_path,
                "--output", "json",
            ]
            if spec.get("create_namespace", False):
                args.append("--create-namespace")
            if spec.get("wait", True):
                args.extend(["--wait", "--timeout", str(spec.get("helm_timeout", _DEFAULT_HELM_TIMEOUT))])

            result = await run_command(
                args, timeout=self._timeout, kind=self.KIND, resource_id=spec.id
            )

        if not result.ok:
            raise classify_failure(result, kind=self.KIND, resource_id=spec.id)
        outputs = _outputs_from_release(result.stdout, release, namespace)
        log.info(
            "release_installed",
            release=release,
            namespace=namespace,
            chart=chart,
            version=version,
            revision=outputs["revision"],
        )
        return outputs

    def _stored_kubeconfig(self, resource_id: str, state: "ResourceState") -> str:
        kubeconfig = state.inputs.get("kubeconfig")
        if not kubeconfig:
            raise PermanentProviderError(
                "No kubeconfig recorded for this release",
                kind=self.KIND,
                resource_id=resource_id,
            )
        return str(kubeconfig)

    def _reject(self, spec: ResourceSpec, reason: str) -> None:
        raise InvalidSpecError(spec.id, spec.kind, reason)


def _release_and_namespace(resource_id: str, inputs: dict[str, Any]) -> tuple[str, str]:
    release = str(inputs.get("release") or resource_id)
    namespace = str(inputs.get("namespace") or _DEFAULT_NAMESPACE)
    return release, namespace


def _outputs_from_release(stdout: str, release: str, namespace: str) -> dict[str, Any]:
    try:
        data = json.loads(stdout) if stdout.strip() else {}
    except json.JSONDecodeError:
        data = {}
    metadata = data.get("chart", {}).get("metadata", {})
    return {
        "release": data.get("name", release),
        "namespace": data.get("namespace", namespace),
        "revision": data.get("version", 0),
        "status": data.get("info", {}).get("status", "unknown"),
        "chart": metadata.get("name", ""),
        "version": metadata.get("version", ""),
        "app_version": metadata.get("appVersion", ""),
    }
