# Apply the kopf patch before any other import so kopf._cogs.helpers.thirdparty
# recognizes kubernetes_asyncio models (see chop/utils/override.py).
from chop.utils.override import patch_kopf_thirdparty
patch_kopf_thirdparty()

try:
    import os
    from dotenv import load_dotenv, find_dotenv

    env_file = os.environ.get("ENV_FILE", ".env")
    path = find_dotenv(filename=env_file, raise_error_if_not_found=True)
    print(f"Loading environment variables from {path}")
    load_dotenv(dotenv_path=path)

except IOError:
    # No file to set environment variables
    pass

# Now safe to import handlers (which import kopf)  # noqa: E402
from chop.handlers import (  # noqa: E402
    probes,
    keepercluster,
    clickhousecluster,
)

__all__ = [
    "probes",
    "keepercluster",
    "clickhousecluster",
]

__version__ = "0.1.0"
