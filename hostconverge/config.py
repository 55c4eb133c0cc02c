"""Loading desired-configuration documents from JSON or YAML files."""

import json
from pathlib import Path
from typing import Union

import yaml

from hostconverge.models.desired import DesiredConfig


def load_document(path: Union[str, Path]) -> DesiredConfig:
    """
    Read and validate a desired-configuration document.

    `.json` files are parsed as JSON, anything else as YAML. Raises OSError,
    json.JSONDecodeError, yaml.YAMLError or pydantic.ValidationError.
    """
    path = Path(path)
    with path.open() as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    return DesiredConfig.model_validate(data or {})


def dump_document(document: DesiredConfig) -> str:
    """YAML rendering of a document that load_document reads back unchanged."""
    data = document.model_dump(mode="json")
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
