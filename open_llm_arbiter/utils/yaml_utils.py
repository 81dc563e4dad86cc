from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import yaml


def load_yaml_dict(
    path: str | Path,
    *,
    error_message: str | None = None,
) -> dict[str, Any]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if isinstance(payload, dict):
        return payload
    raise ValueError(error_message or f"Expected YAML object in '{resolved}'.")


def render_yaml(payload: Any) -> str:
    return yaml.safe_dump(payload, sort_keys=False).rstrip()


def print_yaml(payload: Any) -> None:
    sys.stdout.write(render_yaml(payload) + "\n")
