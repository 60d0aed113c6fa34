#!/usr/bin/env python3
"""Marketplace invariant checks against config/marketplace_params.json."""

import sys
from pathlib import Path

from marketplace.policy.invariants import check_params
from marketplace.policy.resolver import load_json

ROOT = Path(__file__).resolve().parents[1]
PARAMS_PATH = ROOT / "config" / "marketplace_params.json"


def check(path: Path = PARAMS_PATH) -> int:
    errors = check_params(load_json(path))
    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check(Path(sys.argv[1]) if len(sys.argv) > 1 else PARAMS_PATH))
