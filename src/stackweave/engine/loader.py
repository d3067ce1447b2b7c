"""
YAML stack loader.

Loads stack documents, validates them against StackSchema, and compiles a
validated schema into a Stack:

- a value that is exactly one ``{{resources.<id>.<output>}}`` becomes an OutputRef
- ``{{secrets.NAME}}`` becomes a Secret literal read from a SecretProvider
- a string mixing text and expressions becomes a template (Derived) value
- anything else is a literal
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from .exceptions import DuplicateNodeError
from .load_result import LoadResult
from .references import OutputRef, Secret, template
from .schema import EXPRESSION_PATTERN, RESOURCE_EXPRESSION, SECRET_EXPRESSION, StackSchema
from .secrets.exceptions import SecretNotFoundError
from .secrets.provider import EnvVarSecretProvider, SecretProvider
from .stack import Stack

logger = logging.getLogger(__name__)


def load_stack_from_file(file_path: str | Path) -> LoadResult[StackSchema]:
    """
    Load and validate a stack from a YAML file.

    Args:
        file_path: Path to YAML stack file

    Returns:
        LoadResult.success(StackSchema) if valid
        LoadResult.failure(error_message) with validation errors
    """
    path = Path(file_path)

    if not path.exists():
        return LoadResult.failure(f"Stack file not found: {file_path}")

    if not path.is_file():
        return LoadResult.failure(f"Path is not a file: {file_path}")

    try:
        with open(path, encoding="utf-8") as f:
            yaml_content = f.read()
    except OSError as e:
        return LoadResult.failure(f"Failed to read file '{file_path}': {e}")

    result = load_stack_from_yaml(yaml_content, source=str(file_path))
    result.source = str(path)
    return result


def load_stack_from_yaml(yaml_content: str, source: str = "<string>") -> LoadResult[StackSchema]:
    """
    Load and validate a stack from a YAML string.

    Example:
        result = load_stack_from_yaml('''
        name: demo
        resources:
          - id: vpc
            kind: vpc
            inputs: {cidr_block: 10.0.0.0/16}
        exports:
          vpc_id: "{{resources.vpc.id}}"
        ''')
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        return LoadResult.failure(f"Invalid YAML syntax in {source}: {e}")

    if not isinstance(data, dict):
        return LoadResult.failure(
            f"Stack {source} must be a YAML dictionary, got {type(data).__name__}"
        )

    schema_result = StackSchema.validate_yaml_dict(data)
    if not schema_result.is_success:
        return LoadResult.failure(f"Stack validation failed in {source}:\n{schema_result.error}")

    return LoadResult.success(schema_result.unwrap(), source=source)


def discover_stacks(directory: str | Path) -> LoadResult[list[StackSchema]]:
    """
    Discover and load all YAML stacks in a directory.

    Invalid files are skipped with warnings; only a missing directory fails.
    """
    dir_path = Path(directory)

    if not dir_path.exists():
        return LoadResult.failure(f"Directory not found: {directory}")

    if not dir_path.is_dir():
        return LoadResult.failure(f"Path is not a directory: {directory}")

    stacks: list[StackSchema] = []
    errors: list[str] = []

    yaml_files = sorted(list(dir_path.glob("*.yaml")) + list(dir_path.glob("*.yml")))

    for yaml_file in yaml_files:
        result = load_stack_from_file(yaml_file)
        if result.is_success:
            stacks.append(result.unwrap())
        else:
            errors.append(f"{yaml_file.name}: {result.error}")

    if errors:
        logger.warning(f"{len(errors)} stack(s) failed to load:")
        for error in errors:
            logger.warning(f"  - {error}")

    return LoadResult.success(stacks, source=str(dir_path))


def _secret_literal(name: str, secret_provider: SecretProvider) -> Secret:
    return Secret(secret_provider.get_secret(name))


def compile_value(value: Any, secret_provider: SecretProvider) -> Any:  # noqa: ANN401
    """
    Turn a declared YAML value into an engine input value.

    Raises:
        SecretNotFoundError: If a {{secrets.NAME}} is not available
    """
    if isinstance(value, dict):
        return {k: compile_value(v, secret_provider) for k, v in value.items()}
    if isinstance(value, list):
        return [compile_value(item, secret_provider) for item in value]
    if not isinstance(value, str):
        return value

    matches = list(EXPRESSION_PATTERN.finditer(value))
    if not matches:
        return value

    def expression_value(expression: str) -> Any:  # noqa: ANN401
        resource = RESOURCE_EXPRESSION.match(expression)
        if resource:
            return OutputRef(resource.group(1), resource.group(2))
        secret = SECRET_EXPRESSION.match(expression)
        if secret:
            return _secret_literal(secret.group(1), secret_provider)
        raise ValueError(f"Invalid expression: {expression}")

    if len(matches) == 1 and matches[0].group(0) == value:
        return expression_value(matches[0].group(1))

    parts: list[Any] = []
    position = 0
    for match in matches:
        if match.start() > position:
            parts.append(value[position : match.start()])
        parts.append(expression_value(match.group(1)))
        position = match.end()
    if position < len(value):
        parts.append(value[position:])
    return template(*parts)


def compile_stack(
    schema: StackSchema, secret_provider: SecretProvider | None = None
) -> LoadResult[Stack]:
    """
    Compile a validated schema into a Stack.

    Args:
        schema: Validated stack schema
        secret_provider: Source of {{secrets.NAME}} values (default: environment)

    Returns:
        LoadResult.success(Stack) or a failure naming the missing secret
    """
    provider = secret_provider or EnvVarSecretProvider()
    stack = Stack(schema.name, schema.description)

    try:
        for resource in schema.resources:
            stack.resource(
                resource.id,
                resource.kind,
                inputs=compile_value(resource.inputs, provider),
                depends_on=resource.depends_on,
                outputs=resource.outputs,
                secret_outputs=resource.secret_outputs,
            )
        for name, value in schema.exports.items():
            stack.export(name, compile_value(value, provider))
    except (SecretNotFoundError, DuplicateNodeError, ValueError) as e:
        return LoadResult.failure(f"Stack '{schema.name}': {e}", source=schema.name)

    logger.debug(f"Compiled stack '{schema.name}' with {len(stack)} resources")
    return LoadResult.success(stack, source=schema.name)


__all__ = [
    "load_stack_from_file",
    "load_stack_from_yaml",
    "discover_stacks",
    "compile_value",
    "compile_stack",
]
