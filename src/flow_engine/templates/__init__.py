"""
Pre-built flow templates.
"""

from pathlib import Path
from typing import Any, Dict, List

import yaml

from ..core.errors import FlowNotFoundError
from ..models.flow import FlowDefinition

TEMPLATE_DIR = Path(__file__).parent


def _read(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f)


def list_templates() -> List[Dict[str, Any]]:
    """Template summaries for the builder's gallery."""
    summaries = []
    for path in sorted(TEMPLATE_DIR.glob("*.yaml")):
        data = _read(path)
        flow = data.get("flow", {})
        summaries.append({
            "key": data.get("key", path.stem),
            "name": data.get("name"),
            "description": data.get("description"),
            "trigger": (flow.get("trigger") or {}).get("type"),
            "nodes": [node["id"] for node in flow.get("nodes", [])],
        })
    return summaries


def load_template(key: str) -> FlowDefinition:
    """
    Instantiate a template as a new draft flow (no id until saved).

    Raises:
        FlowNotFoundError: if no template has this key
    """
    paths = {path.stem: path for path in TEMPLATE_DIR.glob("*.yaml")}
    path = paths.get(key)
    if path is None:
        raise FlowNotFoundError(f"Template '{key}' not found")
    return FlowDefinition.model_validate(_read(path)["flow"])


__all__ = ["list_templates", "load_template"]
