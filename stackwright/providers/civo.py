"""Provider layer — Civo cloud (networks, firewalls, k3s clusters, DNS records).

All adapters share one :class:`CivoClient`, a thin async wrapper around the
Civo v2 REST API built on httpx.  The client maps HTTP failures onto the
provider error taxonomy:

    404                     -> ProviderResourceNotFoundError
    408, 429, 5xx, network  -> TransientProviderError (retried by the engine)
    any other 4xx           -> PermanentProviderError

Every ``create()`` first looks the object up by its name (or label) so that
a retried create adopts the object created by the earlier attempt.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx

from stackwright.exceptions import (
    PermanentProviderError,
    ProviderError,
    ProviderResourceNotFoundError,
    TransientProviderError,
)
from stackwright.logging import get_logger
from stackwright.providers.base import BaseProvider, ResolvedSpec

if TYPE_CHECKING:
    from stackwright.config import CivoConfig
    from stackwright.orchestration.state import ResourceState

log = get_logger(__name__)

_TRANSIENT_STATUS = frozenset({408, 429})
_CLUSTER_READY = "ACTIVE"
_CLUSTER_FAILED = frozenset({"ERROR", "FAILED"})


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class CivoClient:
    """Async client for the Civo v2 API.

    Usage::

        client = CivoClient(api_key="...", region="LON1")
        networks = await client.list_items("/networks")
        await client.close()

    Pass *transport* (e.g. ``httpx.MockTransport``) to intercept requests.
    """

    def __init__(
        self,
        api_key: str | None,
        api_url: str = "https://api.civo.com/v2",
        region: str = "LON1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url.rstrip("/")
        self.region = region
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, config: "CivoConfig") -> "CivoClient":
        return cls(
            api_key=config.api_key,
            api_url=config.api_url,
            region=config.region,
            timeout=config.request_timeout_seconds,
        )

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        kind: str | None = None,
        resource_id: str | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            ProviderResourceNotFoundError: HTTP 404.
            TransientProviderError: Throttling, server errors, network errors.
            PermanentProviderError: Any other client error, or no API key.
        """
        client = self._get_client(kind, resource_id)
        query = {"region": self.region, **(params or {})}
        try:
            response = await client.request(method, path, params=query, json=json)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(
                f"Civo API timeout on {method} {path}", kind=kind, resource_id=resource_id
            ) from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(
                f"Civo API unreachable on {method} {path}: {exc}",
                kind=kind,
                resource_id=resource_id,
            ) from exc

        if response.status_code >= 400:
            raise _error_for_response(response, method, path, kind, resource_id)
        if not response.content:
            return {}
        return response.json()

    async def list_items(
        self, path: str, kind: str | None = None, resource_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Return every object of a collection, following pagination."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            body = await self.request(
                "GET", path, params={"page": page}, kind=kind, resource_id=resource_id
            )
            if isinstance(body, list):
                return items + body
            items.extend(body.get("items", []))
            if page >= int(body.get("pages", 1) or 1):
                return items
            page += 1

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self, kind: str | None, resource_id: str | None) -> httpx.AsyncClient:
        if not self._api_key:
            raise PermanentProviderError(
                "Civo API key is not configured (set STACKWRIGHT_CIVO__API_KEY)",
                kind=kind,
                resource_id=resource_id,
            )
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_url,
                headers={"Authorization": f"bearer {self._api_key}"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client


def _error_for_response(
    response: httpx.Response,
    method: str,
    path: str,
    kind: str | None,
    resource_id: str | None,
) -> ProviderError:
    status = response.status_code
    try:
        body = response.json()
        reason = body.get("reason") or body.get("code") or response.text
    except ValueError:
        reason = response.text
    message = f"Civo API {method} {path} returned {status}: {reason}"
    context = {"status_code": status}
    if status == 404:
        return ProviderResourceNotFoundError(
            message, kind=kind, resource_id=resource_id, context=context
        )
    if status in _TRANSIENT_STATUS or status >= 500:
        return TransientProviderError(message, kind=kind, resource_id=resource_id, context=context)
    return PermanentProviderError(message, kind=kind, resource_id=resource_id, context=context)


# ---------------------------------------------------------------------------
# Shared adapter behaviour
# ---------------------------------------------------------------------------


class _CivoProvider(BaseProvider):
    """Common plumbing for adapters backed by one Civo collection."""

    COLLECTION: str = ""

    def __init__(self, client: CivoClient) -> None:
        self._client = client

    async def close(self) -> None:
        await self._client.close()

    async def _find(
        self, resource_id: str, path: str | None = None, **match: Any
    ) -> dict[str, Any] | None:
        for item in await self._client.list_items(
            path or self.COLLECTION, kind=self.KIND, resource_id=resource_id
        ):
            if all(item.get(k) == v for k, v in match.items()):
                return item
        return None

    async def _delete_path(self, path: str, resource_id: str) -> None:
        try:
            await self._client.request("DELETE", path, kind=self.KIND, resource_id=resource_id)
        except ProviderResourceNotFoundError:
            log.info("civo_object_already_absent", kind=self.KIND, path=path)

    def _stored_id(self, resource_id: str, state: "ResourceState") -> str:
        object_id = state.outputs.get("id")
        if not object_id:
            raise ProviderResourceNotFoundError(
                "No Civo object id recorded",
                kind=self.KIND,
                resource_id=resource_id,
            )
        return str(object_id)


# ---------------------------------------------------------------------------
# network
# ---------------------------------------------------------------------------


class NetworkProvider(_CivoProvider):
    KIND = "network"
    DESCRIPTION = "Civo private network"
    COLLECTION = "/networks"
    OUTPUTS = ("id", "label", "name")
    REQUIRED_INPUTS = ("label",)

    async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
        label = str(spec.require("label"))
        existing = await self._find(spec.id, label=label)
        if existing is not None:
            log.info("network_adopted", network_id=existing.get("id"), label=label)
            return _network_outputs(existing)
        body = await self._client.request(
            "POST", self.COLLECTION, json={"label": label, "region": self._client.region},
            kind=self.KIND, resource_id=spec.id,
        )
        log.info("network_created", network_id=body.get("id"), label=label)
        return _network_outputs({"name": label, **body})

    async def read(self, resource_id: str, state: "ResourceState") -> dict[str, Any]:
        object_id = self._stored_id(resource_id, state)
        body = await self._client.request(
            "GET", f"{self.COLLECTION}/{object_id}", kind=self.KIND, resource_id=resource_id
        )
        return _network_outputs(body)

    async def update(self, spec: ResolvedSpec, observed: dict[str, Any]) -> dict[str, Any]:
        label = str(spec.require("label"))
        body = await self._client.request(
            "PUT", f"{self.COLLECTION}/{observed['id']}",
            json={"label": label, "region": self._client.region},
            kind=self.KIND, resource_id=spec.id,
        )
        return _network_outputs({**observed, **body, "label": label})

    async def delete(self, resource_id: str, state: "ResourceState") -> None:
        object_id = state.outputs.get("id")
        if object_id:
            await self._delete_path(f"{self.COLLECTION}/{object_id}", resource_id)


def _network_outputs(body: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": body.get("id", ""),
        "label": body.get("label", ""),
        "name": body.get("name", body.get("label", "")),
    }


# ---------------------------------------------------------------------------
# firewall
# ---------------------------------------------------------------------------


class FirewallProvider(_CivoProvider):
    KIND = "firewall"
    DESCRIPTION = "Civo firewall attached to a network"
    COLLECTION = "/firewalls"
    OUTPUTS = ("id", "name", "network_id")
    REQUIRED_INPUTS = ("network_id",)

    async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
        name = str(spec.get("name") or spec.id)
        network_id = str(spec.require("network_id"))
        existing = await self._find(spec.id, name=name)
        if existing is not None:
            log.info("firewall_adopted", firewall_id=existing.get("id"), name=name)
            return _firewall_outputs(existing, network_id)
        body = await self._client.request(
            "POST", self.COLLECTION,
            json={
                "name": name,
                "network_id": network_id,
                "region": self._client.region,
                "create_rules": bool(spec.get("create_default_rules", True)),
            },
            kind=self.KIND, resource_id=spec.id,
        )
        log.info("firewall_created", firewall_id=body.get("id"), name=name)
        return _firewall_outputs({"name": name, **body}, network_id)

    async def read(self, resource_id: str, state: "ResourceState") -> dict[str, Any]:
        object_id = self._stored_id(resource_id, state)
        existing = await self._find(resource_id, id=object_id)
        if existing is None:
            raise ProviderResourceNotFoundError(
                f"Firewall '{object_id}' not found", kind=self.KIND, resource_id=resource_id
            )
        return _firewall_outputs(existing, str(state.outputs.get("network_id", "")))

    async def update(self, spec: ResolvedSpec, observed: dict[str, Any]) -> dict[str, Any]:
        name = str(spec.get("name") or spec.id)
        network_id = str(spec.require("network_id"))
        if observed.get("network_id") and observed["network_id"] != network_id:
            raise PermanentProviderError(
                "A firewall cannot be moved to another network; destroy it first",
                kind=self.KIND,
                resource_id=spec.id,
            )
        await self._client.request(
            "PUT", f"{self.COLLECTION}/{observed['id']}",
            json={"name": name, "region": self._client.region},
            kind=self.KIND, resource_id=spec.id,
        )
        return _firewall_outputs({**observed, "name": name}, network_id)

    async def delete(self, resource_id: str, state: "ResourceState") -> None:
        object_id = state.outputs.get("id")
        if object_id:
            await self._delete_path(f"{self.COLLECTION}/{object_id}", resource_id)


def _firewall_outputs(body: dict[str, Any], network_id: str) -> dict[str, Any]:
    return {
        "id": body.get("id", ""),
        "name": body.get("name", ""),
        "network_id": body.get("network_id") or network_id,
    }


# ---------------------------------------------------------------------------
# cluster
# ---------------------------------------------------------------------------


class ClusterProvider(_CivoProvider):
    """Civo managed k3s cluster.

    ``create`` and ``update`` return only once the cluster reports ACTIVE;
    the engine's per-resource timeout bounds the wait.
    """

    KIND = "cluster"
    DESCRIPTION = "Civo managed Kubernetes (k3s) cluster"
    COLLECTION = "/kubernetes/clusters"
    OUTPUTS = (
        "id", "name", "status", "kubeconfig", "api_endpoint",
        "dns_entry", "master_ip", "kubernetes_version",
    )
    REQUIRED_INPUTS = ("pools",)

    def __init__(self, client: CivoClient, poll_interval_seconds: float = 10.0) -> None:
        super().__init__(client)
        self._poll_interval = poll_interval_seconds

    async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
        name = str(spec.get("name") or spec.id)
        existing = await self._find(spec.id, name=name)
        if existing is not None:
            log.info("cluster_adopted", cluster_id=existing.get("id"), name=name)
            cluster_id = str(existing["id"])
        else:
            body = await self._client.request(
                "POST", self.COLLECTION, json=self._payload(spec, name),
                kind=self.KIND, resource_id=spec.id,
            )
            cluster_id = str(body["id"])
            log.info("cluster_creating", cluster_id=cluster_id, name=name)
        return await self._wait_until_active(spec.id, cluster_id)

    async def read(self, resource_id: str, state: "ResourceState") -> dict[str, Any]:
        object_id = self._stored_id(resource_id, state)
        body = await self._client.request(
            "GET", f"{self.COLLECTION}/{object_id}", kind=self.KIND, resource_id=resource_id
        )
        return _cluster_outputs(body)

    async def update(self, spec: ResolvedSpec, observed: dict[str, Any]) -> dict[str, Any]:
        name = str(spec.get("name") or spec.id)
        payload = self._payload(spec, name)
        # Network and firewall are fixed at creation.
        payload.pop("network_id", None)
        payload.pop("firewall_id", None)
        await self._client.request(
            "PUT", f"{self.COLLECTION}/{observed['id']}", json=payload,
            kind=self.KIND, resource_id=spec.id,
        )
        return await self._wait_until_active(spec.id, str(observed["id"]))

    async def delete(self, resource_id: str, state: "ResourceState") -> None:
        object_id = state.outputs.get("id")
        if object_id:
            await self._delete_path(f"{self.COLLECTION}/{object_id}", resource_id)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _payload(self, spec: ResolvedSpec, name: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": name,
            "region": self._client.region,
            "pools": _normalise_pools(name, spec.require("pools")),
        }
        for key in ("network_id", "firewall_id", "kubernetes_version", "cni_plugin"):
            if spec.get(key):
                payload[key] = spec.get(key)
        applications = spec.get("applications")
        if applications:
            payload["applications"] = (
                ",".join(applications) if isinstance(applications, list) else str(applications)
            )
        tags = spec.get("tags")
        if tags:
            payload["tags"] = " ".join(tags) if isinstance(tags, list) else str(tags)
        return payload

    async def _wait_until_active(self, resource_id: str, cluster_id: str) -> dict[str, Any]:
        while True:
            body = await self._client.request(
                "GET", f"{self.COLLECTION}/{cluster_id}", kind=self.KIND, resource_id=resource_id
            )
            status = str(body.get("status", "")).upper()
            if status == _CLUSTER_READY and body.get("kubeconfig"):
                log.info("cluster_active", cluster_id=cluster_id)
                return _cluster_outputs(body)
            if status in _CLUSTER_FAILED:
                raise PermanentProviderError(
                    f"Cluster '{cluster_id}' entered status {status}",
                    kind=self.KIND,
                    resource_id=resource_id,
                )
            log.debug("cluster_waiting", cluster_id=cluster_id, status=status)
            await asyncio.sleep(self._poll_interval)


def _normalise_pools(name: str, pools: Any) -> list[dict[str, Any]]:
    if isinstance(pools, dict):
        pools = [pools]
    result = []
    for index, pool in enumerate(pools):
        result.append({
            "id": str(pool.get("id") or f"{name}-pool-{index}"),
            "size": pool.get("size"),
            "count": int(pool.get("node_count", pool.get("count", 1))),
        })
    return result


def _cluster_outputs(body: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": body.get("id", ""),
        "name": body.get("name", ""),
        "status": body.get("status", ""),
        "kubeconfig": body.get("kubeconfig", ""),
        "api_endpoint": body.get("api_endpoint", ""),
        "dns_entry": body.get("dns_entry", ""),
        "master_ip": body.get("master_ip", ""),
        "kubernetes_version": body.get("kubernetes_version", ""),
    }


# ---------------------------------------------------------------------------
# dns-record
# ---------------------------------------------------------------------------


class DnsRecordProvider(_CivoProvider):
    KIND = "dns-record"
    DESCRIPTION = "Record in a Civo-hosted DNS domain"
    OUTPUTS = ("id", "domain_id", "name", "type", "value", "ttl")
    REQUIRED_INPUTS = ("domain_id", "name", "value")

    async def create(self, spec: ResolvedSpec) -> dict[str, Any]:
        domain_id = str(spec.require("domain_id"))
        name = str(spec.require("name"))
        record_type = str(spec.get("type", "CNAME")).upper()
        existing = await self._find(
            spec.id, path=f"/dns/{domain_id}/records", name=name, type=record_type
        )
        if existing is not None:
            log.info("dns_record_adopted", record_id=existing.get("id"), name=name)
            return await self.update(spec, _record_outputs(existing, domain_id))
        body = await self._client.request(
            "POST", f"/dns/{domain_id}/records", json=_record_payload(spec, record_type),
            kind=self.KIND, resource_id=spec.id,
        )
        log.info("dns_record_created", record_id=body.get("id"), name=name)
        return _record_outputs(body, domain_id)

    async def read(self, resource_id: str, state: "ResourceState") -> dict[str, Any]:
        object_id = self._stored_id(resource_id, state)
        domain_id = str(state.outputs.get("domain_id") or state.inputs.get("domain_id"))
        existing = await self._find(
            resource_id, path=f"/dns/{domain_id}/records", id=object_id
        )
        if existing is None:
            raise ProviderResourceNotFoundError(
                f"DNS record '{object_id}' not found", kind=self.KIND, resource_id=resource_id
            )
        return _record_outputs(existing, domain_id)

    async def update(self, spec: ResolvedSpec, observed: dict[str, Any]) -> dict[str, Any]:
        domain_id = str(spec.require("domain_id"))
        record_type = str(spec.get("type", "CNAME")).upper()
        body = await self._client.request(
            "PUT", f"/dns/{domain_id}/records/{observed['id']}",
            json=_record_payload(spec, record_type),
            kind=self.KIND, resource_id=spec.id,
        )
        return _record_outputs({**observed, **body}, domain_id)

    async def delete(self, resource_id: str, state: "ResourceState") -> None:
        object_id = state.outputs.get("id")
        domain_id = state.outputs.get("domain_id") or state.inputs.get("domain_id")
        if object_id and domain_id:
            await self._delete_path(f"/dns/{domain_id}/records/{object_id}", resource_id)


def _record_payload(spec: ResolvedSpec, record_type: str) -> dict[str, Any]:
    return {
        "type": record_type,
        "name": str(spec.require("name")),
        "value": str(spec.require("value")),
        "ttl": int(spec.get("ttl", 600)),
        "priority": int(spec.get("priority", 0)),
    }


def _record_outputs(body: dict[str, Any], domain_id: str) -> dict[str, Any]:
    return {
        "id": body.get("id", ""),
        "domain_id": body.get("domain_id") or domain_id,
        "name": body.get("name", ""),
        "type": body.get("type", ""),
        "value": body.get("value", ""),
        "ttl": body.get("ttl", 0),
    }
