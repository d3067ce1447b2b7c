"""MCP tools: discover, validate, plan, apply and destroy stacks, and read their exports.

Each tool reads the shared AppContext from the lifespan context. Parameters
are flat and annotated, so FastMCP validates them and publishes their
descriptions; the docstrings become the tool descriptions.

Responses never contain secret plaintext except from reveal_stack_output,
which requires a reason and is recorded in the audit log.
"""

import json
from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field

from .context import AppContext, AppContextType
from .engine import (
    Stack,
    StackError,
    StackSchema,
    load_stack_from_yaml,
)
from .engine.schema import EXPRESSION_PATTERN, SECRET_EXPRESSION, iter_strings
from .engine.secrets import SecretError
from .formatting import (
    format_plan_markdown,
    format_stack_info_markdown,
    format_stack_list_markdown,
    format_stack_not_found_error,
    stack_not_found_response,
)
from .server import mcp

StackName = Annotated[
    str,
    Field(description="Stack name (use list_stacks() to discover)", min_length=1, max_length=100),
]
Timeout = Annotated[
    float | None,
    Field(description="Cancel the run after this many seconds", gt=0, le=86400),
]
Debug = Annotated[bool, Field(description="Write redacted run details to a temp file")]


def _compile_registered(app_ctx: AppContext, stack: str) -> tuple[Stack | None, dict[str, Any]]:
    """Compile a registered stack; on failure return (None, error response)."""
    if stack not in app_ctx.registry:
        return None, stack_not_found_response(stack, app_ctx.registry.list_names())
    return _compile_schema(app_ctx, app_ctx.registry.get(stack))


def _compile_schema(
    app_ctx: AppContext, schema: StackSchema
) -> tuple[Stack | None, dict[str, Any]]:
    result = app_ctx.compile(schema)
    if not result.is_success:
        return None, {"status": "build_failed", "error": result.error}
    return result.unwrap(), {}


# =============================================================================
# Discovery Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Stacks",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_stacks(
    tags: Annotated[
        list[str] | None,
        Field(description="Only stacks having ALL of these tags"),
    ] = None,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> str:
    """List stack declarations. Optional: tags (filter), format (json|markdown)."""
    app_ctx = ctx.request_context.lifespan_context
    stacks = app_ctx.registry.list_names(tags=tags)

    if format == "markdown":
        return format_stack_list_markdown(stacks, tags or None)
    return json.dumps(stacks)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Stack Info",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_stack_info(
    stack: StackName,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get stack details (resources, dependencies, exports). Required: stack."""
    app_ctx = ctx.request_context.lifespan_context
    registry = app_ctx.registry

    if stack not in registry:
        return format_stack_not_found_error(stack, registry.list_names(), format)

    info = registry.get_stack_metadata(stack, detailed=True)
    if format == "markdown":
        return format_stack_info_markdown(info)
    return info


@mcp.tool(
    annotations=ToolAnnotations(
        title="Validate Stack YAML",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def validate_stack_yaml(
    yaml_content: Annotated[
        str,
        Field(description="Complete stack YAML to validate", min_length=10, max_length=100000),
    ],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Validate stack YAML without provisioning. Required: yaml_content."""
    app_ctx = ctx.request_context.lifespan_context

    load_result = load_stack_from_yaml(yaml_content, source="<validation>")
    if not load_result.is_success:
        return {
            "valid": False,
            "errors": [
                f"YAML parsing error: {load_result.error}",
                "Common issues: Invalid YAML syntax, missing required fields "
                "('name', 'resources'), or incorrect indentation.",
            ],
            "warnings": [],
            "kinds_used": [],
        }

    schema = load_result.unwrap()
    errors: list[str] = []
    warnings: list[str] = []
    registered_kinds = app_ctx.providers.list_kinds()

    for resource in schema.resources:
        if not app_ctx.providers.has(resource.kind):
            errors.append(
                f"Unknown kind '{resource.kind}' in resource '{resource.id}'. "
                f"Available kinds: {', '.join(registered_kinds)}"
            )

    configured = set(app_ctx.secret_provider.list_secret_keys())
    strings = [text for r in schema.resources for _, text in iter_strings(r.inputs, r.id)]
    strings += [text for _, text in iter_strings(schema.exports, "exports")]
    for text in strings:
        for expression in EXPRESSION_PATTERN.findall(text):
            match = SECRET_EXPRESSION.match(expression)
            if match and match.group(1).lower() not in configured:
                warnings.append(f"Secret '{match.group(1)}' is not configured")

    return {
        "valid": not errors,
        "errors": errors,
        "warnings": sorted(set(warnings)),
        "kinds_used": sorted({resource.kind for resource in schema.resources}),
    }


# =============================================================================
# Provisioning Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Plan Stack",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def plan_stack(
    stack: StackName,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Preview the changes an apply would make, without provider calls. Required: stack."""
    app_ctx = ctx.request_context.lifespan_context

    compiled, error = _compile_registered(app_ctx, stack)
    if compiled is None:
        return error

    plan = await app_ctx.get_engine(stack).plan(compiled)
    response = plan.to_response()
    if format == "markdown":
        return format_plan_markdown(response)
    return response


@mcp.tool(
    annotations=ToolAnnotations(
        title="Apply Stack",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,  # Re-applying an unchanged stack makes no provider calls
        openWorldHint=True,
    )
)
async def apply_stack(
    stack: StackName,
    timeout: Timeout = None,
    debug: Debug = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Create, update or delete resources until the stack matches its declaration.

    Required: stack. Optional: timeout (seconds), debug.
    """
    app_ctx = ctx.request_context.lifespan_context

    compiled, error = _compile_registered(app_ctx, stack)
    if compiled is None:
        return error

    result = await app_ctx.get_engine(stack).apply(compiled, timeout=timeout)
    return result.to_response(debug)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Apply Inline Stack",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def apply_inline_stack(
    stack_yaml: Annotated[
        str,
        Field(
            description="Complete stack YAML with name and resources",
            min_length=10,
            max_length=100000,
        ),
    ],
    timeout: Timeout = None,
    debug: Debug = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Apply a stack given as YAML. Required: stack_yaml. Optional: timeout, debug."""
    app_ctx = ctx.request_context.lifespan_context

    load_result = load_stack_from_yaml(stack_yaml, source="<inline-stack>")
    if not load_result.is_success:
        return {
            "status": "build_failed",
            "error": (
                f"Failed to parse stack YAML: {load_result.error}. "
                "Use validate_stack_yaml() to check the declaration before applying."
            ),
        }

    schema = load_result.unwrap()
    compiled, error = _compile_schema(app_ctx, schema)
    if compiled is None:
        return error

    result = await app_ctx.get_engine(schema.name).apply(compiled, timeout=timeout)
    return result.to_response(debug)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Destroy Stack",
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def destroy_stack(
    stack: StackName,
    timeout: Timeout = None,
    debug: Debug = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Delete every recorded resource of a stack, dependents first. Required: stack."""
    app_ctx = ctx.request_context.lifespan_context

    compiled, error = _compile_registered(app_ctx, stack)
    if compiled is None:
        return error

    result = await app_ctx.get_engine(stack).destroy(compiled, timeout=timeout)
    return result.to_response(debug)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Cancel Apply",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def cancel_apply(
    stack: StackName,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Cancel the running apply or destroy of a stack. Required: stack."""
    app_ctx = ctx.request_context.lifespan_context

    engine = app_ctx.engines.get(stack)
    if engine is None or not engine.running:
        return {
            "stack": stack,
            "cancelled": False,
            "message": "No operation is running for this stack",
        }

    engine.cancel()
    return {
        "stack": stack,
        "cancelled": True,
        "message": "Cancellation requested; resources already in flight will finish",
    }


# =============================================================================
# Output Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Stack Outputs",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_stack_outputs(
    stack: StackName,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Get the exports of the last apply (secrets redacted). Required: stack."""
    app_ctx = ctx.request_context.lifespan_context

    compiled, error = _compile_registered(app_ctx, stack)
    if compiled is None:
        return error

    try:
        surface = await app_ctx.get_engine(stack).read_exports(compiled)
    except (StackError, SecretError) as e:
        return {"status": "failure", "error": str(e)}

    response: dict[str, Any] = {
        "status": "success",
        "outputs": surface.outputs(),
        "secret_outputs": surface.secrets(),
    }
    unavailable = {name: surface.failure_reason(name) for name in surface.failed()}
    if unavailable:
        response["unavailable"] = unavailable
    return response


@mcp.tool(
    annotations=ToolAnnotations(
        title="Reveal Stack Output",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def reveal_stack_output(
    stack: StackName,
    output: Annotated[str, Field(description="Export name", min_length=1, max_length=200)],
    reason: Annotated[
        str,
        Field(description="Why the plaintext is needed (recorded in audit log)", max_length=500),
    ] = "",
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Return the plaintext of one export. Secret exports require a reason and are audited."""
    app_ctx = ctx.request_context.lifespan_context

    compiled, error = _compile_registered(app_ctx, stack)
    if compiled is None:
        return error

    try:
        surface = await app_ctx.get_engine(stack).read_exports(compiled)
        value = surface.reveal(output, reason)
    except KeyError as e:
        return {"status": "failure", "error": str(e.args[0]) if e.args else str(e)}
    except (StackError, SecretError, ValueError) as e:
        return {"status": "failure", "error": str(e)}

    return {
        "status": "success",
        "output": output,
        "secret": surface.is_secret(output),
        "value": value,
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Secret Audit Log",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_secret_audit_log(
    stack: Annotated[str | None, Field(description="Only events of this stack")] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """List reveals of secret exports (never includes values). Optional: stack."""
    app_ctx = ctx.request_context.lifespan_context
    events = app_ctx.audit_log.get_events(stack_name=stack)
    return {"events": [event.model_dump() for event in events], "total": len(events)}
