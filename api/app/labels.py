import re
from pathlib import Path
from typing import Any, Dict, List

import yaml

LABEL_TYPES = ("flag", "value")


def _slugify(value: str) -> str:
    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "_", value)
    return value.strip("_")


def build_label_schema(data: Dict[str, Any]) -> Dict[str, Any]:
    raw_labels = data.get("labels") if isinstance(data, dict) else None
    if not isinstance(raw_labels, list) or not raw_labels:
        raise ValueError("Label file must define a non-empty 'labels' list")
    labels: List[Dict[str, Any]] = []
    aliases: Dict[str, str] = {}
    for entry in raw_labels:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip()
        key = _slugify(str(entry.get("key") or name))
        if not key:
            continue
        label_type = str(entry.get("type") or "flag").strip().lower()
        if label_type not in LABEL_TYPES:
            raise ValueError(f"Label {key!r} has unknown type {label_type!r}")
        choices = [str(c).strip().lower() for c in entry.get("choices") or [] if str(c).strip()]
        labels.append(
            {
                "key": key,
                "name": name or key,
                "type": label_type,
                "choices": choices,
                "description": str(entry.get("description") or "").strip(),
            }
        )
        aliases[key] = key
        aliases[_slugify(name or key)] = key
    if not labels:
        raise ValueError("Label file defines no usable labels")
    return {"labels": labels, "aliases": aliases}


def load_label_schema(path: str) -> Dict[str, Any]:
    if not path:
        raise ValueError("LABELS_PATH is not set")
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Label file not found: {file_path}")
    data = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    return build_label_schema(data)


def format_labels_for_prompt(schema: Dict[str, Any]) -> str:
    labels = schema.get("labels", [])
    lines: List[str] = []
    for index, label in enumerate(labels):
        if label["type"] == "flag":
            answer = '"true | false"'
        elif label["choices"]:
            answer = '"' + " | ".join(label["choices"]) + ' | false"'
        else:
            answer = '"string | false"'
        separator = "," if index < len(labels) - 1 else ""
        description = f"  // {label['description']}" if label["description"] else ""
        lines.append(f'  "{label["name"]}": {answer}{separator}{description}')
    return "{\n" + "\n".join(lines) + "\n}"


def _as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value or "").strip().lower() in ("true", "yes", "1")


def _as_value(value: Any, choices: List[str]) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text or text.lower() in ("false", "none", "null", "n/a"):
        return None
    if choices:
        lowered = text.lower()
        return lowered if lowered in choices else None
    return text[:100]


def validate_labels(result: Dict[str, Any], schema: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize raw model output to ``{key: bool | str | None}`` for every label.

    Accepts display names or keys in any case; missing flags are false and
    missing values are null.
    """
    aliases = schema.get("aliases") or {}
    raw: Dict[str, Any] = {}
    if isinstance(result, dict):
        for name, value in result.items():
            key = aliases.get(_slugify(str(name)))
            if key:
                raw[key] = value
    validated: Dict[str, Any] = {}
    for label in schema.get("labels", []):
        value = raw.get(label["key"])
        if label["type"] == "flag":
            validated[label["key"]] = _as_flag(value)
        else:
            validated[label["key"]] = _as_value(value, label["choices"])
    if "need_manual_check" in validated and not any(
        value for key, value in validated.items() if key != "need_manual_check"
    ):
        validated["need_manual_check"] = True
    return validated
