"""Text rendering of plans, apply reports and state listings."""

from __future__ import annotations

import json
from typing import Any

from .executor import ApplyReport
from .models import UNKNOWN, Action, Change, ChangeReason, NodeStatus
from .planner import Plan

SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DESTROY: "-",
    Action.READ: "<=",
}


def symbol_for(change: Change) -> str:
    if change.action == Action.REPLACE and change.create_before_destroy:
        return "+/-"
    return SYMBOLS.get(change.action, "?")


def format_value(value: Any) -> str:
    if value is UNKNOWN:
        return "(known after apply)"
    if value is None:
        return "null"
    if isinstance(value, str):
        return json.dumps(value)
    return json.dumps(value, sort_keys=True, default=repr)


def _describe(change: Change) -> str:
    if change.action == Action.CREATE:
        text = "will be created"
        if change.reason == ChangeReason.DRIFT:
            text += " (deleted outside of stratum)"
        return text
    if change.action == Action.UPDATE:
        return "will be updated in-place"
    if change.action == Action.REPLACE:
        order = "create before destroy" if change.create_before_destroy else "destroy then create"
        return f"must be replaced ({order})"
    if change.action == Action.DESTROY:
        if change.reason == ChangeReason.REMOVED:
            return "will be destroyed (no longer in configuration)"
        if change.reason == ChangeReason.DEPOSED:
            return "will be destroyed (replaced by an earlier apply)"
        return "will be destroyed"
    if change.action == Action.READ:
        return "will be read during apply"
    return "no changes"


def render_change(change: Change) -> list[str]:
    lines = [f"  {symbol_for(change)} {change.key} {_describe(change)}"]
    for key, attr in sorted(change.diff.items()):
        suffix = "  # forces replacement" if attr.forces_replacement else ""
        if change.action == Action.CREATE:
            lines.append(f"      + {key} = {format_value(attr.new)}")
        elif attr.new is None:
            lines.append(f"      - {key} = {format_value(attr.old)}{suffix}")
        else:
            lines.append(
                f"      ~ {key}: {format_value(attr.old)} -> {format_value(attr.new)}{suffix}"
            )
    return lines


def render_plan(plan: Plan) -> str:
    """Render a plan the way ``stratum plan`` prints it."""
    if not plan.has_changes:
        return "No changes. Infrastructure is up-to-date."
    lines: list[str] = []
    if plan.drifted:
        lines.append(f"Drift detected in {len(plan.drifted)} resource(s): {', '.join(plan.drifted)}")
        lines.append("")
    for change in plan.changes:
        lines.extend(render_change(change))
    counts = plan.summary()
    lines.append("")
    lines.append(
        f"Plan: {counts['add']} to add, {counts['change']} to change, "
        f"{counts['destroy']} to destroy."
    )
    if plan.outputs and not plan.destroy:
        lines.append("")
        lines.append("Outputs:")
        for name, value in sorted(plan.outputs.items()):
            lines.append(f"  {name} = {format_value(value)}")
    return "\n".join(lines)


def render_report(report: ApplyReport) -> str:
    lines: list[str] = []
    for result in report.failed:
        lines.append(f"✗ {result.address}: {result.error}")
    for result in report.skipped:
        if result.cause:
            lines.append(f"- {result.address}: skipped (blocked by {' -> '.join(result.cause)})")
        else:
            lines.append(f"- {result.address}: skipped ({result.error})")
    counts = {status: 0 for status in NodeStatus}
    for result in report.results.values():
        counts[result.status] += 1
    if lines:
        lines.append("")
    summary = (
        f"Apply {'cancelled' if report.cancelled else 'complete'}: "
        f"{counts[NodeStatus.APPLIED]} applied, {counts[NodeStatus.FAILED]} failed, "
        f"{counts[NodeStatus.SKIPPED]} skipped."
    )
    lines.append(summary)
    return "\n".join(lines)


class TableRenderer:
    """Render data as a box-drawing table.

    Example output:
        +----------------+--------------+----------+
        | Address        | Type         | Provider |
        +----------------+--------------+----------+
        | aws_vpc.main   | aws_vpc      | aws      |
        +----------------+--------------+----------+
    """

    def render(self, headers: list[str], rows: list[list[str]]) -> str:
        if not headers:
            return ""

        widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row[: len(widths)]):
                widths[i] = max(widths[i], len(cell))

        separator = "+-" + "-+-".join("-" * w for w in widths) + "-+"
        lines = [
            separator,
            "| " + " | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)) + " |",
            separator,
        ]
        for row in rows:
            cells = [
                cell.ljust(widths[i] if i < len(widths) else len(cell))
                for i, cell in enumerate(row)
            ]
            lines.append("| " + " | ".join(cells) + " |")
        lines.append(separator)
        return "\n".join(lines)
