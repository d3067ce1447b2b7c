"""stackweave MCP server.

Builds the shared AppContext once per server process (stack declarations,
sandbox provider adapters, state cipher, audit log) and hands it to every
tool through the FastMCP lifespan. Tools themselves live in tools.py.

While the server runs, every root log handler carries a RedactingFilter, so
secret values learned during a run never reach stderr.
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .context import AppContext, AppContextType
from .engine import (
    POLICY_PACKS_ENV,
    EngineConfig,
    PolicyPack,
    StackRegistry,
    create_sandbox_registry,
    get_policy_pack,
    load_state_cipher,
)
from .engine.secrets import EnvVarSecretProvider, RedactingFilter, SecretAuditLog, SecretCipher

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


def load_stacks(registry: StackRegistry) -> None:
    """Register the bundled stacks, then any stacks from STACKWEAVE_TEMPLATE_PATHS.

    STACKWEAVE_TEMPLATE_PATHS is a comma-separated list of directories (``~``
    allowed). Directories are loaded in order after the bundled templates, and
    a later stack replaces an earlier one with the same name, so a team can
    ship its own ``eks-alb-stack``.

    Raises:
        RuntimeError: If the bundled templates directory is missing or loading fails
    """
    bundled = Path(__file__).parent / "templates"
    if not bundled.is_dir():
        raise RuntimeError(
            f"Bundled stack templates not found at {bundled}; the installation is incomplete"
        )

    extra_dirs: list[Path] = []
    for entry in os.getenv("STACKWEAVE_TEMPLATE_PATHS", "").split(","):
        if not entry.strip():
            continue
        candidate = Path(entry.strip()).expanduser()
        if candidate.is_dir():
            extra_dirs.append(candidate)
        else:
            logger.warning(f"Ignoring stack template path (not a directory): {candidate}")

    if extra_dirs:
        logger.info(f"Extra stack template paths: {extra_dirs}")

    result = registry.load_from_directories([bundled, *extra_dirs], on_duplicate="overwrite")
    if not result.is_success:
        logger.error(f"Stack loading failed: {result.error}")
        raise RuntimeError(f"Stack loading failed: {result.error}")

    logger.info(f"Registered {len(registry)} stacks")


def load_cipher() -> SecretCipher:
    """Cipher for secret outputs in state files.

    Uses STACKWEAVE_STATE_KEY when set, otherwise the key file in the state
    directory (generated on first use).

    Raises:
        RuntimeError: If STACKWEAVE_STATE_KEY is not a valid Fernet key
    """
    try:
        return load_state_cipher()
    except ValueError as e:
        raise RuntimeError(f"STACKWEAVE_STATE_KEY is not a valid Fernet key: {e}") from e


def load_policy_packs() -> list[PolicyPack]:
    """Bundled policy packs named in STACKWEAVE_POLICY_PACKS (comma-separated).

    No packs are enabled by default.

    Raises:
        RuntimeError: If a named pack does not exist
    """
    packs: list[PolicyPack] = []
    for entry in os.getenv(POLICY_PACKS_ENV, "").split(","):
        name = entry.strip()
        if not name:
            continue
        try:
            packs.append(get_policy_pack(name))
        except KeyError as e:
            raise RuntimeError(f"{POLICY_PACKS_ENV}: {e.args[0]}") from e

    if packs:
        logger.info(f"Policy packs: {', '.join(pack.name for pack in packs)}")
    return packs


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the AppContext shared by all tools, and tear it down on shutdown.

    Environment Variables:
        STACKWEAVE_MAX_CONCURRENCY: Provider calls in flight per layer (default: 4, range: 1-64)
        STACKWEAVE_STATE_DIR / STACKWEAVE_STATE_KEY: State location and encryption key
        STACKWEAVE_POLICY_PACKS: Bundled policy packs to enforce (default: none)
        STACKWEAVE_SECRET_*: Secret literals for {{secrets.*}} expressions

    Yields:
        AppContext with initialized resources
    """
    logger.info("Starting stackweave: loading stacks and provider adapters")

    engine_config = EngineConfig.from_env()
    if engine_config.max_concurrency != EngineConfig().max_concurrency:
        logger.info(f"Using max concurrency: {engine_config.max_concurrency}")

    secret_provider = EnvVarSecretProvider()
    secret_keys = secret_provider.list_secret_keys()
    logger.info(f"Secret provider: {secret_provider.__class__.__name__}")
    logger.info(f"Available secrets: {len(secret_keys)}")
    if secret_keys:
        # Keys only, never values
        logger.debug(f"Secret keys: {', '.join(secret_keys)}")

    registry = StackRegistry()
    load_stacks(registry)

    providers = create_sandbox_registry()
    logger.info(f"Provider kinds: {len(providers.list_kinds())}")

    app_context = AppContext(
        registry=registry,
        providers=providers,
        cipher=load_cipher(),
        audit_log=SecretAuditLog(),
        engine_config=engine_config,
        secret_provider=secret_provider,
        policies=load_policy_packs(),
    )

    # Scrub learned secret values from everything written to the log handlers
    redacting_filter = RedactingFilter(app_context.redactor)
    handlers = logging.getLogger().handlers
    for handler in handlers:
        handler.addFilter(redacting_filter)

    try:
        yield app_context
    finally:
        logger.info("Stopping stackweave")
        for handler in handlers:
            handler.removeFilter(redacting_filter)
        for name, engine in app_context.engines.items():
            if engine.running:
                logger.warning(f"Cancelling running operation on stack '{name}'")
                engine.cancel()


mcp = FastMCP("stackweave", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Run the server over stdio (`stackweave` or `python -m stackweave`).

    STACKWEAVE_LOG_LEVEL selects the log level (default INFO).
    """
    level_name = os.getenv("STACKWEAVE_LOG_LEVEL", "INFO").upper()
    if level_name not in LOG_LEVELS:
        print(
            f"Unknown STACKWEAVE_LOG_LEVEL '{level_name}' "
            f"(expected one of {', '.join(LOG_LEVELS)}); using INFO",
            file=sys.stderr,
        )
        level_name = "INFO"

    # stdout carries the MCP protocol; logs go to stderr
    logging.basicConfig(
        level=getattr(logging, level_name),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info("Serving stackweave tools on stdio")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.exception(f"stackweave server failed: {e}")
        sys.exit(1)

    logger.info("stackweave stopped")


__all__ = [
    "mcp",
    "main",
    "AppContext",
    "AppContextType",
    "load_stacks",
    "load_cipher",
    "load_policy_packs",
]
