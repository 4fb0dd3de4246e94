"""Run request loading utilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import RunRequest


class RequestLoadError(RuntimeError):
    """Raised when a run request file cannot be parsed or validated."""


def parse_run_request(document: Any, *, source: str = "<request>") -> RunRequest:
    """Validate an already-decoded request document."""

    if not isinstance(document, dict):
        raise RequestLoadError(f"Run request in {source} must be a mapping")
    try:
        return RunRequest.model_validate(document)
    except ValidationError as exc:
        raise RequestLoadError(f"Run request validation error in {source}: {exc}") from exc


def load_run_request(path: Path | str) -> RunRequest:
    """Load a run request from a YAML or JSON file.

    JSON is a subset of YAML, but ``.json`` files go through :mod:`json` so
    that error messages point at the right syntax.
    """

    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RequestLoadError(f"Cannot read run request {path}: {exc}") from exc

    try:
        if path.suffix == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise RequestLoadError(f"Failed to parse run request {path}: {exc}") from exc

    return parse_run_request(document, source=str(path))


__all__ = ["RequestLoadError", "load_run_request", "parse_run_request"]
