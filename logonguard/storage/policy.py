"""Managed (enterprise) policy sources. Read-only from the resolver's side."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Optional, Protocol

import yaml

logger = logging.getLogger(__name__)


class PolicySource(Protocol):
    async def read(self) -> dict:  # pragma: no cover - interface
        ...


class StaticPolicySource:
    """Policy held in memory (tests, embedding applications)."""

    def __init__(self, policy: Optional[dict] = None):
        self._policy = copy.deepcopy(policy or {})

    async def read(self) -> dict:
        return copy.deepcopy(self._policy)


def load_mapping_file(path: Path) -> dict:
    """Load a JSON or YAML mapping from disk; {} if missing or unreadable."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning("Failed to parse %s: %s", path, exc)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


class FilePolicySource:
    """
    Policy read from a JSON or YAML file, re-read on every resolve.

    The file may wrap settings in a top-level `policy` key, which is how
    enterprise templates usually ship them.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    async def read(self) -> dict:
        data = load_mapping_file(self.path)
        inner = data.get("policy")
        if isinstance(inner, dict):
            return inner
        return data
