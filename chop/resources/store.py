from typing import Any, Dict, List, Optional
from kubernetes_asyncio.client import (
    ApiClient,
    ApiException,
    AppsV1Api,
    CoreV1Api,
    PolicyV1Api,
)

# kind -> (api attribute, method suffix)
KINDS = {
    "StatefulSet": ("apps_v1", "stateful_set"),
    "ConfigMap": ("core_v1", "config_map"),
    "Service": ("core_v1", "service"),
    "Secret": ("core_v1", "secret"),
    "Pod": ("core_v1", "pod"),
    "PodDisruptionBudget": ("policy_v1", "pod_disruption_budget"),
}


class KubernetesStore:
    """Versioned object access for the kinds the operator manages.

    Objects are kubernetes_asyncio models. Fetched objects carry
    `metadata.resource_version`; replacing with a stale version raises an
    `ApiException` with status 409.
    """

    def __init__(self, api_client: ApiClient, request_timeout: Optional[float] = None):
        self.api_client = api_client
        self.request_timeout = request_timeout
        self._apis: Dict[str, Any] = {}

    @property
    def apps_v1(self) -> AppsV1Api:
        if "apps_v1" not in self._apis:
            self._apis["apps_v1"] = AppsV1Api(self.api_client)
        return self._apis["apps_v1"]

    @property
    def core_v1(self) -> CoreV1Api:
        if "core_v1" not in self._apis:
            self._apis["core_v1"] = CoreV1Api(self.api_client)
        return self._apis["core_v1"]

    @property
    def policy_v1(self) -> PolicyV1Api:
        if "policy_v1" not in self._apis:
            self._apis["policy_v1"] = PolicyV1Api(self.api_client)
        return self._apis["policy_v1"]

    def _method(self, verb: str, kind: str):
        try:
            api_name, suffix = KINDS[kind]
        except KeyError:
            raise ValueError(f"Unsupported kind: {kind}") from None
        return getattr(getattr(self, api_name), f"{verb}_namespaced_{suffix}")

    def _kwargs(self) -> Dict[str, Any]:
        if self.request_timeout is None:
            return {}
        return {"_request_timeout": self.request_timeout}

    async def get(self, kind: str, namespace: str, name: str):
        """Retrieve the latest state of an object, None when it does not exist."""
        try:
            return await self._method("read", kind)(
                name=name, namespace=namespace, **self._kwargs()
            )
        except ApiException as ex:
            if ex.status == 404:
                return None
            raise

    async def create(self, kind: str, namespace: str, body):
        return await self._method("create", kind)(
            namespace=namespace, body=body, **self._kwargs()
        )

    async def replace(self, kind: str, namespace: str, name: str, body):
        return await self._method("replace", kind)(
            name=name, namespace=namespace, body=body, **self._kwargs()
        )

    async def delete(self, kind: str, namespace: str, name: str) -> bool:
        """Delete an object. Returns False when it was already gone."""
        try:
            await self._method("delete", kind)(
                name=name, namespace=namespace, **self._kwargs()
            )
        except ApiException as ex:
            if ex.status == 404:
                return False
            raise
        return True

    async def list(self, kind: str, namespace: str, labels: Dict[str, str]) -> List:
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        result = await self._method("list", kind)(
            namespace=namespace, label_selector=selector, **self._kwargs()
        )
        return list(result.items or [])
