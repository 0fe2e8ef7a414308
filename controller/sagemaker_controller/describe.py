"""
kubectl-describe style rendering of TrainingJob resources.

Keys are turned into labels the way kubectl describe does for custom
resources: camelCase split into capitalised words, with common initialisms
upper-cased. So status.sageMakerTrainingJobName renders as
"Sage Maker Training Job Name:", which external tooling greps for.
"""

import re
from typing import Any, Dict, List

from . import crd
from .models import JobResource

_WORD_PATTERN = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z0-9]+|[A-Z]+|[0-9]+")

# Upper-cased as a whole word; "Arn" and "Vpc" stay as they are, like kubectl
COMMON_INITIALISMS = frozenset({
    "API", "CPU", "DNS", "HTTP", "HTTPS", "ID", "IP", "JSON",
    "TLS", "TTL", "UID", "URI", "URL", "UUID",
})


def smart_label(key: str) -> str:
    """Convert a camelCase key into a describe label ("sageMakerEndpoint" -> "Sage Maker Endpoint")."""
    words = []
    for word in _WORD_PATTERN.findall(key):
        if word.upper() in COMMON_INITIALISMS:
            words.append(word.upper())
        else:
            words.append(word[:1].upper() + word[1:])
    return " ".join(words)


def _render_map(data: Dict[str, Any], indent: int, lines: List[str]) -> None:
    pad = "  " * indent
    scalars = [(smart_label(k), v) for k, v in data.items() if not isinstance(v, (dict, list))]
    width = max((len(label) for label, _ in scalars), default=0) + 1

    for key, value in data.items():
        label = smart_label(key)
        if isinstance(value, dict):
            lines.append(f"{pad}{label}:")
            _render_map(value, indent + 1, lines)
        elif isinstance(value, list):
            lines.append(f"{pad}{label}:")
            _render_list(value, indent + 1, lines)
        else:
            rendered = "<none>" if value is None else str(value)
            lines.append(f"{pad}{(label + ':').ljust(width)}  {rendered}")


def _render_list(items: List[Any], indent: int, lines: List[str]) -> None:
    pad = "  " * indent
    for item in items:
        if isinstance(item, dict):
            _render_map(item, indent, lines)
        else:
            lines.append(f"{pad}{item}")


def describe_training_job(resource: JobResource) -> str:
    """
    Render a TrainingJob the way `kubectl describe trainingjob <name>` does.

    Unset status fields are omitted, so an unsubmitted job shows no
    "Sage Maker Training Job Name:" line at all.
    """
    lines: List[str] = []
    header = {
        "Name": resource.name,
        "Namespace": resource.namespace,
        "API Version": crd.API_VERSION,
        "Kind": crd.KIND,
    }
    width = max(len(k) for k in header) + 1
    for label, value in header.items():
        lines.append(f"{(label + ':').ljust(width)}  {value}")

    if resource.uid:
        lines.append(f"{'UID:'.ljust(width)}  {resource.uid}")

    lines.append("Spec:")
    _render_map(resource.spec, 1, lines)

    status = {k: v for k, v in resource.status.to_dict().items() if v is not None}
    lines.append("Status:")
    _render_map(status, 1, lines)

    lines.append("Events:  <none>")
    return "\n".join(lines) + "\n"
