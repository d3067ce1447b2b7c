"""Shared formatting utilities for MCP tool responses.

Markdown format is human-readable with headers and lists; JSON format is
structured data for programmatic access.
"""

from typing import Any

# =============================================================================
# Markdown Formatting Utilities
# =============================================================================


def format_stack_list_markdown(stacks: list[str], tags: list[str] | None = None) -> str:
    """Format stack list as markdown."""
    if not stacks:
        tag_msg = f" with tags: {', '.join(tags)}" if tags else ""
        return f"No stacks found{tag_msg}"

    header = f"## Available Stacks ({len(stacks)})"
    if tags:
        header += f"\n**Filtered by tags**: {', '.join(tags)}"

    stack_list = "\n".join(f"- {name}" for name in stacks)
    return f"{header}\n\n{stack_list}"


def format_stack_info_markdown(info: dict[str, Any]) -> str:
    """Format detailed stack metadata (StackRegistry.get_stack_metadata) as markdown."""
    lines = [
        f"# Stack: {info['name']}",
        "",
        info.get("description") or "No description",
        "",
        "## Configuration",
        f"- **Total Resources**: {len(info['resources'])}",
    ]

    if info.get("tags"):
        lines.append(f"- **Tags**: {', '.join(info['tags'])}")

    if info.get("source"):
        lines.append(f"- **Source**: {info['source']}")

    lines.append("")
    lines.append("## Resources")
    for resource_id, resource in info["resources"].items():
        line = f"- **{resource_id}** ({resource['kind']})"
        if resource.get("depends_on"):
            line += f" - depends on: {', '.join(resource['depends_on'])}"
        if resource.get("secret_outputs"):
            line += f" - secret outputs: {', '.join(resource['secret_outputs'])}"
        lines.append(line)

    if info.get("exports"):
        lines.append("")
        lines.append("## Exports")
        for name in info["exports"]:
            lines.append(f"- {name}")

    return "\n".join(lines)


def format_plan_markdown(plan: dict[str, Any]) -> str:
    """Format a StackPlan response as markdown."""
    if plan.get("status") != "success":
        return f"**Error**: {plan.get('error')}"

    lines = [f"# Plan: {plan['stack']}", ""]
    if not plan["has_changes"]:
        lines.append("No changes. Infrastructure matches the declaration.")
        changes = {}
    else:
        counts = sorted(plan["summary"].items())
        summary = ", ".join(f"{action}: {count}" for action, count in counts)
        lines.extend([f"**Summary**: {summary}", "", "## Changes"])
        changes = plan["changes"]

    for node_id, change in changes.items():
        line = f"- **{node_id}** ({change['kind']}): {change['action']}"
        if change.get("known") is False:
            line += " (known after apply)"
        if change.get("reason"):
            line += f" - {change['reason']}"
        lines.append(line)

    if plan.get("warnings"):
        lines.extend(["", "## Policy Warnings"])
        lines.extend(f"- {warning}" for warning in plan["warnings"])

    return "\n".join(lines)


# =============================================================================
# Error Formatting Utilities
# =============================================================================


def stack_not_found_response(stack_name: str, available: list[str]) -> dict[str, Any]:
    """JSON response for an unknown stack."""
    return {
        "status": "failure",
        "error": f"Stack not found: {stack_name}",
        "available_stacks": available,
    }


def format_stack_not_found_error(
    stack_name: str, available: list[str], format_type: str = "json"
) -> dict[str, Any] | str:
    """Format stack not found error with the available stack names."""
    if format_type == "markdown":
        stack_list = "\n".join(f"- {name}" for name in available)
        return f"**Error**: Stack not found: `{stack_name}`\n\n**Available stacks:**\n{stack_list}"
    return stack_not_found_response(stack_name, available)


__all__ = [
    "format_stack_list_markdown",
    "format_stack_info_markdown",
    "format_plan_markdown",
    "format_stack_not_found_error",
    "stack_not_found_response",
]
