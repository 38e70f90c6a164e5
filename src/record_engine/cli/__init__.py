"""CLI for inspecting and deploying record-engine registries.

A registry is referenced as ``module:attr`` where ``attr`` is either a
``CollectionRegistry`` or a callable taking an ``AsyncDatabase`` (or
``None`` when no connection is needed) and returning one.

Usage:
    record-engine profiles
    record-engine tables myapp.cms:build_registry
    RECORD_ENGINE_PROFILE=local record-engine validate myapp.cms:build_registry
    record-engine create-tables myapp.cms:build_registry --profile local

Commands:
    profiles       - List profiles from engine.toml
    tables         - Show the tables derived for every entity
    validate       - Compare a live database against the registry
    create-tables  - Create missing tables for the registry
"""

import argparse
import asyncio
import importlib
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from record_engine.config.loader import load_engine_config
from record_engine.crud.registry import CollectionRegistry
from record_engine.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    create_database,
    get_active_profile_name,
)

console = Console()


# ============================================================================
# Registry loading (CLI-internal helper)
# ============================================================================


def load_registry(target: str, database: Any = None) -> CollectionRegistry:
    """Import ``module:attr`` and return the registry it names.

    Args:
        target: Import path such as ``myapp.cms:build_registry``.
        database: Passed to the factory when ``attr`` is callable.

    Returns:
        The ``CollectionRegistry``.

    Raises:
        ValueError: If ``target`` is malformed or does not yield a registry.
        ImportError: If the module cannot be imported.

    Example:
        >>> registry = load_registry("tests.conftest:build_registry")
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attr', got '{target}'")

    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'") from None

    if not isinstance(obj, CollectionRegistry) and callable(obj):
        obj = obj(database)
    if not isinstance(obj, CollectionRegistry):
        raise ValueError(f"'{target}' did not produce a CollectionRegistry")
    return obj


def _config_path(args: argparse.Namespace) -> Path | None:
    return Path(args.config) if getattr(args, "config", None) else None


# ============================================================================
# Command implementations
# ============================================================================


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from engine.toml.

    Reads only local TOML config -- no database calls.

    Args:
        args: Parsed CLI arguments.

    Returns:
        0 on success, 1 if engine.toml not found.
    """
    try:
        config = load_engine_config(_config_path(args))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    try:
        current = get_active_profile_name()
    except ProfileNotFoundError:
        current = None

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        name_style = "bold cyan" if name == current else ""
        table.add_row(
            marker,
            f"[{name_style}]{name}[/{name_style}]" if name_style else name,
            profile.description or "",
        )

    console.print(table)
    console.print(
        f"Locales: {', '.join(config.engine.locales)} "
        f"(default [cyan]{config.engine.default_locale}[/cyan])",
        style="dim",
    )

    if current:
        console.print("\n[bold green]*[/bold green] = active profile")

    return 0


def cmd_tables(args: argparse.Namespace) -> int:
    """Print the derived table topology of a registry.

    Args:
        args: Parsed arguments with ``registry``.

    Returns:
        0 on success, 1 if the registry cannot be loaded.
    """
    try:
        registry = load_registry(args.registry)
        registry.validate()
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    table = Table(title="Entity Tables", show_header=True, header_style="bold")
    table.add_column("Entity")
    table.add_column("Kind")
    table.add_column("Table")
    table.add_column("Columns")

    for topology in registry.topologies:
        for physical in topology.tables:
            table.add_row(
                topology.state.name,
                topology.state.kind,
                physical.name,
                ", ".join(c.name for c in physical.columns),
            )

    console.print(table)
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a live database against a registry.

    Args:
        args: Parsed arguments with ``registry`` and ``profile``.

    Returns:
        0 on valid schema, 1 on invalid schema or connection failure.
    """
    try:
        registry = load_registry(args.registry)
        config = load_engine_config(_config_path(args))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    console.print("Validating schema...", style="dim")
    result = connect_and_validate(registry, profile_name=args.profile, config=config)

    if result.schema_valid:
        console.print()
        console.print(
            f"[bold green]v[/bold green] Schema is valid for "
            f"[bold cyan]{result.profile_name}[/bold cyan]"
        )
        if result.schema_report and result.schema_report.extra_tables:
            console.print(
                f"  Extra tables: [yellow]"
                f"{', '.join(result.schema_report.extra_tables)}[/yellow]"
            )
        return 0

    console.print()
    if result.schema_report:
        console.print("[bold red]x[/bold red] Schema has drifted")
        console.print(result.schema_report.format_report())
    else:
        console.print(f"[red]Error: {result.error}[/red]")
    return 1


async def _async_create_tables(args: argparse.Namespace) -> int:
    """Async implementation for create-tables command.

    Args:
        args: Parsed arguments with ``registry`` and ``profile``.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        config = load_engine_config(_config_path(args))
        database = create_database(args.profile, config)
    except (ProfileNotFoundError, FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    try:
        registry = load_registry(args.registry, database)
        registry.validate()
        await registry.create_all()
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    finally:
        await database.close()

    count = sum(len(t.tables) for t in registry.topologies)
    console.print(f"[bold green]v[/bold green] {count} tables ensured")
    return 0


def cmd_create_tables(args: argparse.Namespace) -> int:
    """Create registry tables in a profile database.

    Wraps the async implementation with ``asyncio.run()``.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code.
    """
    return asyncio.run(_async_create_tables(args))


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="record-engine",
        description="Inspect and deploy record-engine registries",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to engine.toml (default: ./engine.toml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # profiles command
    p_profiles = subparsers.add_parser("profiles", help="List available profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    # tables command
    p_tables = subparsers.add_parser("tables", help="Show derived tables of a registry")
    p_tables.add_argument("registry", help="Registry reference as module:attr")
    p_tables.set_defaults(func=cmd_tables)

    # validate command
    p_validate = subparsers.add_parser(
        "validate", help="Compare a live database against a registry"
    )
    p_validate.add_argument("registry", help="Registry reference as module:attr")
    p_validate.add_argument("--profile", default=None, help="Profile from engine.toml")
    p_validate.set_defaults(func=cmd_validate)

    # create-tables command
    p_create = subparsers.add_parser(
        "create-tables", help="Create missing tables for a registry"
    )
    p_create.add_argument("registry", help="Registry reference as module:attr")
    p_create.add_argument("--profile", default=None, help="Profile from engine.toml")
    p_create.set_defaults(func=cmd_create_tables)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
