import copy
import hashlib
import mmh3
import jsonpickle
from datetime import datetime, timezone
from typing import Any, Dict, Mapping


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sort_dict_keys(d):
    """Recursively sort dictionary keys and handle nested structures.

    Args:
        d: Data structure (dict, list, or primitive type)

    Returns:
        Sorted version of the data structure
    """
    if isinstance(d, dict):
        return {key: sort_dict_keys(value) for key, value in sorted(d.items())}
    elif isinstance(d, list):
        return [sort_dict_keys(item) for item in d]
    else:
        return d


def canonicalize_dict(data) -> str:
    """
    Returns a canonical JSON representation of a dictionary.

    Keys are sorted recursively, so two dictionaries holding the same content
    serialize identically regardless of insertion order.
    """
    return jsonpickle.dumps(sort_dict_keys(data), unpicklable=False)


def compute_hash(data: Any) -> str:
    """Compute a stable murmur3/sha256 digest of a dict, list or string.

    Returns the first 16 hex characters, short enough for annotations.
    """
    if isinstance(data, (dict, list)):
        _data = canonicalize_dict(data).encode()
    elif isinstance(data, str):
        _data = data.encode()
    else:
        raise ValueError(f"Hash of {type(data)} is not supported.")
    murmur_str = str(mmh3.hash128(_data))
    return hashlib.sha256(murmur_str.encode("utf-8")).hexdigest()[:16]


def deep_merge(base: Mapping, overlay: Mapping) -> Dict[str, Any]:
    """Merge `overlay` into a copy of `base`.

    Nested mappings are merged key by key, any other value in `overlay`
    replaces the one in `base`.
    """
    merged = copy.deepcopy(dict(base))
    for key, value in (overlay or {}).items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
