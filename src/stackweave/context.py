"""Shared context types for MCP server.

This module contains context types used across server and tools modules,
separated to avoid circular imports.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession

from .engine import (
    ApplyEngine,
    EngineConfig,
    JsonFileStateStore,
    LoadResult,
    PolicyPack,
    ProviderRegistry,
    Stack,
    StackRegistry,
    StackSchema,
    StateConfig,
    StateStore,
    compile_stack,
)
from .engine.secrets import (
    EnvVarSecretProvider,
    SecretAuditLog,
    SecretCipher,
    SecretProvider,
    SecretRedactor,
)


def default_state_store(stack_name: str) -> StateStore:
    """JSON state file for a stack under the configured state directory."""
    return JsonFileStateStore(StateConfig.get_state_path(stack_name))


@dataclass
class AppContext:
    """Application context containing shared resources for MCP tools.

    This context is created during server startup and made available to all tools
    via dependency injection through the Context parameter.

    One ApplyEngine is kept per stack name so that a run can be cancelled from
    another tool call and runs of the same stack queue up on its lock. All
    engines share one redactor, which the server attaches to its log handlers,
    and the same enabled policy packs.
    """

    registry: StackRegistry
    providers: ProviderRegistry
    cipher: SecretCipher
    audit_log: SecretAuditLog = field(default_factory=SecretAuditLog)
    engine_config: EngineConfig = field(default_factory=EngineConfig)
    secret_provider: SecretProvider = field(default_factory=EnvVarSecretProvider)
    redactor: SecretRedactor = field(default_factory=SecretRedactor)
    policies: list[PolicyPack] = field(default_factory=list)
    state_store_factory: Callable[[str], StateStore] = default_state_store
    engines: dict[str, ApplyEngine] = field(default_factory=dict)

    def get_engine(self, stack_name: str) -> ApplyEngine:
        """Return the engine for a stack, creating it on first use."""
        engine = self.engines.get(stack_name)
        if engine is None:
            engine = ApplyEngine(
                self.providers,
                self.state_store_factory(stack_name),
                cipher=self.cipher,
                config=self.engine_config,
                audit_log=self.audit_log,
                redactor=self.redactor,
                policies=self.policies,
            )
            self.engines[stack_name] = engine
        return engine

    def compile(self, schema: StackSchema) -> LoadResult[Stack]:
        """Compile a declaration, resolving {{secrets.*}} from the secret provider."""
        return compile_stack(schema, self.secret_provider)


# Type alias for MCP tool context parameter
AppContextType = Context[ServerSession, AppContext]


__all__ = ["AppContext", "AppContextType", "default_state_store"]
