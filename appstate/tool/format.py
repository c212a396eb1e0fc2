"""Library for formatting comparison results."""

from collections.abc import Generator
import json
from typing import Any

import yaml

from appstate.manager import ComparisonResult

PADDING = 4

RESOURCE_KEYS = ["group", "kind", "namespace", "name", "status", "health", "hook"]


def resource_rows(result: ComparisonResult) -> list[dict[str, str]]:
    """Return one row per managed resource, in comparison order."""
    rows = []
    for res in result.managed_resources:
        status = res.status
        rows.append(
            {
                "group": status.group,
                "kind": status.kind,
                "namespace": status.namespace,
                "name": status.name,
                "status": status.status or "",
                "health": status.health.status if status.health is not None else "",
                "hook": "true" if status.hook else "",
            }
        )
    return rows


def format_table(
    rows: list[dict[str, str]], keys: list[str]
) -> Generator[str, None, None]:
    """Generate an upper case header and one padded line per row."""
    if not rows:
        return
    table = [[key.upper() for key in keys]] + [
        [str(row.get(key, "")) for key in keys] for row in rows
    ]
    widths = [max(len(line[i]) for line in table) + PADDING for i in range(len(keys))]
    for line in table:
        yield "".join(value.ljust(width) for value, width in zip(line, widths)).rstrip()


def summary_lines(result: ComparisonResult) -> Generator[str, None, None]:
    """Generate the sync, health and condition lines of the result."""
    sync = result.sync_status
    revisions = sync.revisions or ([sync.revision] if sync.revision else [])
    yield f"Sync Status: {sync.status}" + (
        f" ({', '.join(revisions)})" if revisions else ""
    )
    yield f"Health Status: {result.health_status.status}"
    for condition in result.conditions:
        yield f"{condition.type}: {condition.message}"


def diff_lines(result: ComparisonResult) -> Generator[str, None, None]:
    """Generate the diff of each modified resource, separated by blank lines."""
    for res in result.managed_resources:
        if not res.diff.modified:
            continue
        yield ""
        yield from res.diff.diff_lines()


def result_document(result: ComparisonResult) -> dict[str, Any]:
    """Return the serializable form of the result."""
    doc: dict[str, Any] = {
        "sync": result.sync_status.to_dict(),
        "health": result.health_status.to_dict(),
        "resources": [res.to_dict() for res in result.resources],
    }
    if result.conditions:
        doc["conditions"] = [
            {"type": str(c.type), "message": c.message} for c in result.conditions
        ]
    return doc


def text_lines(result: ComparisonResult, show_diff: bool) -> Generator[str, None, None]:
    """Generate the human readable report of the result."""
    yield from format_table(resource_rows(result), RESOURCE_KEYS)
    yield ""
    yield from summary_lines(result)
    if show_diff:
        yield from diff_lines(result)


def yaml_lines(result: ComparisonResult) -> Generator[str, None, None]:
    content = yaml.dump(result_document(result), sort_keys=False, explicit_start=True)
    yield from content.rstrip("\n").split("\n")


def json_lines(result: ComparisonResult) -> Generator[str, None, None]:
    yield from json.dumps(result_document(result), indent=4).split("\n")

