#!/usr/bin/env python3
"""
Wrapper script to run the clickhouse-operator with Kopf.

This script applies the kubernetes_asyncio patch BEFORE Kopf is loaded,
then launches Kopf's CLI with all standard arguments.

Usage:
    python run_operator.py [any kopf run arguments]

Examples:
    python run_operator.py --verbose --all-namespaces
    python run_operator.py -n my-namespace --log-format=json
"""

# Apply patch BEFORE any kopf imports
from chop.utils.override import patch_kopf_thirdparty
patch_kopf_thirdparty()

import sys  # noqa: E402

if __name__ == '__main__':
    import kopf.cli  # noqa: E402

    # Registers handlers via decorators
    import chop.app  # noqa: E402, F401

    # Behave as if the user called: kopf run <args>
    sys.argv.insert(1, 'run')

    sys.exit(kopf.cli.main(prog_name="kopf"))
