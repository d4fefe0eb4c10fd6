"""Configuration documents for CI pipelines: deep merge and variable export.

Nested settings (e.g. an environment JSON file layered over defaults) are
flattened into dotted keys and emitted as Azure DevOps logging commands so
later pipeline steps can read them as variables.
"""
from __future__ import annotations
import copy
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List


def merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``override`` into a copy of ``base``.

    Nested dicts merge key by key; any other value in ``override`` (lists
    included) replaces the base value. Neither input is modified.
    """
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flatten(document: Any, separator: str = ".", prefix: str = "") -> Dict[str, str]:
    """Flatten nested dicts and lists into ``{"a.b.0.c": "value"}``.

    Empty dicts and lists produce no keys.
    """
    flat: Dict[str, str] = {}
    if isinstance(document, dict):
        items = ((str(key), value) for key, value in document.items())
    elif isinstance(document, list):
        items = ((str(index), value) for index, value in enumerate(document))
    else:
        if prefix:
            flat[prefix] = _render(document)
        return flat

    for key, value in items:
        name = f"{prefix}{separator}{key}" if prefix else key
        flat.update(flatten(value, separator, name))
    return flat


def _escape(value: str) -> str:
    # Logging command values cannot span lines
    return value.replace("%", "%AZP25").replace("\r", "%0D").replace("\n", "%0A")


def _escape_property(value: str) -> str:
    # ";" separates properties and "]" closes the command
    return _escape(value).replace(";", "%3B").replace("]", "%5D")


def to_logging_commands(
    variables: Dict[str, str],
    secret_keys: Iterable[str] = (),
    output: bool = False,
) -> List[str]:
    """Render ``##vso[task.setvariable]`` commands, one per variable, in key order."""
    secrets = set(secret_keys)
    commands = []
    for key in sorted(variables):
        props = [f"variable={_escape_property(key)}"]
        if key in secrets:
            props.append("issecret=true")
        if output:
            props.append("isOutput=true")
        commands.append(f"##vso[task.setvariable {';'.join(props)}]{_escape(variables[key])}")
    return commands


def load_variables(path: Path, separator: str = ".") -> Dict[str, str]:
    """Read a JSON document and flatten it."""
    with Path(path).open("r", encoding="utf-8") as f:
        return flatten(json.load(f), separator)
