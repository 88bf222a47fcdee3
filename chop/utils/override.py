"""
Replacement for kopf._cogs.helpers.thirdparty that recognises kubernetes_asyncio models.

Kopf only detects models of the synchronous `kubernetes` client, so `kopf.adopt()`
would ignore the StatefulSets, ConfigMaps and Services built by this operator.
The replacement must be installed in sys.modules before kopf imports it, which is
why `run_operator.py` and `chop/__init__.py` call `patch_kopf_thirdparty()` first.
"""
import abc
import sys
import types
from typing import Any, Optional

_MODULE = "kopf._cogs.helpers.thirdparty"
_MODEL_PACKAGES = ("kubernetes.client.models.", "kubernetes_asyncio.client.models.")


def patch_kopf_thirdparty():
    """Install the thirdparty replacement unless it is already in place."""
    existing = sys.modules.get(_MODULE)
    if existing is not None and getattr(existing, "_chop_patched", False):
        return

    class _Absent:
        pass

    try:
        from pykube.objects import APIObject as PykubeObject
    except ImportError:
        PykubeObject = _Absent

    from kubernetes_asyncio.client import V1ObjectMeta, V1OwnerReference

    class KubernetesModel(abc.ABC):
        @classmethod
        def __subclasshook__(cls, subcls: Any) -> Any:
            if cls is KubernetesModel:
                for klass in subcls.__mro__:
                    if klass.__module__.startswith(_MODEL_PACKAGES):
                        return True
            return NotImplemented

        @property
        def metadata(self) -> Optional[V1ObjectMeta]:
            raise NotImplementedError

        @metadata.setter
        def metadata(self, _: Optional[V1ObjectMeta]) -> None:
            raise NotImplementedError

    module = types.ModuleType("thirdparty")
    module.PykubeObject = PykubeObject
    module.KubernetesModel = KubernetesModel
    module.V1ObjectMeta = V1ObjectMeta
    module.V1OwnerReference = V1OwnerReference
    module._chop_patched = True
    sys.modules[_MODULE] = module


patch_kopf_thirdparty()
