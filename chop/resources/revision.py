"""Content fingerprints that decide between restart, update and no-op.

The configuration revision covers the rendered server configuration plus the
user overlay, with topology (member lists, shard macros) left out, so scaling
never restarts running replicas. The workload revision covers the StatefulSet
spec built for a reference replica, without the restart marker.
"""
import copy
from typing import Any, Mapping
from kubernetes_asyncio.client import V1StatefulSet
from chop.resources.managed import RESTARTED_AT_ANNOTATION
from chop.utils.helpers import compute_hash


def configuration_revision(config: Mapping[str, Any], overlay: Mapping[str, Any] = None) -> str:
    return compute_hash({"config": dict(config), "overlay": dict(overlay or {})})


def workload_revision(statefulset: V1StatefulSet) -> str:
    spec = copy.deepcopy(statefulset.spec.to_dict())
    metadata = (spec.get("template") or {}).get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    annotations.pop(RESTARTED_AT_ANNOTATION, None)
    # a template without annotations renders them as None
    metadata["annotations"] = annotations or None
    return compute_hash(spec)
