"""
termplug CLI - Plugin Commands

Commands:
    validate - Validate a manifest and its entry file
    info     - Show manifest details and the sandbox it would get
    run      - Load a plugin, deliver one event, print the response
    presets  - Show the sandbox presets
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.markup import escape

from termplug.cli import app, console
from termplug.cli.output import (
    format_bytes,
    print_bullet_list,
    print_error,
    print_json,
    print_key_value,
    print_status,
    print_success,
    print_table,
    print_warning,
)
from termplug.config.settings import Settings
from termplug.context import PluginContextBuilder
from termplug.errors import PluginError
from termplug.host import PluginHost, PluginHostConfig
from termplug.manifest import Manifest
from termplug.protocol import EVENT_TYPES, decode_event
from termplug.sandbox import PRESETS, SandboxConfig

PRESET_HELP = f"Sandbox preset: {', '.join(PRESETS)}. Defaults to TERMPLUG_SANDBOX_PRESET."


def _load_manifest(path: Path) -> Manifest:
    try:
        return Manifest.load(path)
    except OSError as e:
        print_error(f"Cannot read manifest: {path}", details=str(e))
        raise typer.Exit(1)
    except PluginError as e:
        print_error(str(e))
        raise typer.Exit(1)


def _host_config(preset: Optional[str]) -> PluginHostConfig:
    config = PluginHostConfig.from_settings(Settings())
    if preset is not None:
        if preset.lower() not in PRESETS:
            print_error(f"Unknown sandbox preset: {preset}", hint=PRESET_HELP)
            raise typer.Exit(2)
        config.sandbox_preset = preset.lower()
    return config


@app.command()
def validate(
    manifest_path: Path = typer.Argument(
        ...,
        help="Path to the plugin manifest (TOML).",
    ),
) -> None:
    """
    Validate a plugin manifest.

    Checks required fields, the backend type, and that the entry file
    exists next to the manifest.
    """
    manifest = _load_manifest(manifest_path)
    checks: list[tuple[str, bool, str]] = []

    try:
        manifest.validate()
        checks.append(("Manifest", True, f"{manifest.id}@{manifest.version}"))
    except PluginError as e:
        checks.append(("Manifest", False, e.message))

    try:
        backend = manifest.backend()
        available = "available" if backend.is_available else "not available"
        checks.append(("Backend", backend.is_available, f"{backend.value} ({available})"))
    except PluginError as e:
        checks.append(("Backend", False, e.message))

    try:
        entry = manifest.entry_path(manifest_path.parent)
        checks.append(("Entry file", entry.is_file(), str(entry)))
    except PluginError as e:
        checks.append(("Entry file", False, e.message))

    console.print(f"Validating [cyan]{manifest_path}[/cyan]")
    print_status(checks)

    if all(ok for _, ok, _ in checks):
        print_success("Manifest is valid")
    else:
        print_error("Manifest validation failed")
        raise typer.Exit(1)


@app.command()
def info(
    manifest_path: Path = typer.Argument(
        ...,
        help="Path to the plugin manifest (TOML).",
    ),
    preset: Optional[str] = typer.Option(
        None,
        "--preset",
        "-p",
        help=PRESET_HELP,
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print as JSON.",
    ),
) -> None:
    """
    Show a manifest's identity, capabilities and permissions, and the
    sandbox the plugin would run under.
    """
    manifest = _load_manifest(manifest_path)
    config = _host_config(preset)
    sandbox = config.sandbox_for(manifest)

    if as_json:
        print_json({
            "manifest": manifest.to_dict(),
            "capabilities": manifest.capabilities.names(),
            "permissions": manifest.permissions.summary(),
            "sandbox": sandbox.to_dict(),
        })
        return

    plugin = manifest.plugin
    print_key_value(
        [
            ("id", plugin.id),
            ("name", plugin.name),
            ("version", plugin.version),
            ("description", plugin.description or "-"),
            ("author", plugin.author or "-"),
            ("backend", manifest.backend_decl.backend_type),
            ("entry", manifest.backend_decl.entry),
        ],
        title="Plugin",
    )
    console.print()
    print_bullet_list(manifest.capabilities.names(), title="Capabilities")
    console.print()
    print_bullet_list(manifest.permissions.summary(), title="Requested permissions")
    if manifest.dependencies:
        console.print()
        print_bullet_list(
            [f"{name} {req}" for name, req in manifest.dependencies.items()],
            title="Dependencies",
        )
    console.print()
    print_key_value(
        [
            ("preset", config.sandbox_preset),
            ("memory", format_bytes(sandbox.memory_limit)),
            ("instructions", sandbox.instruction_limit),
            ("timeout", f"{sandbox.timeout_ms} ms"),
            ("paths", ", ".join(sandbox.allowed_paths) or "none"),
            ("network", "yes" if sandbox.allow_network else "no"),
            ("hosts", ", ".join(sandbox.allowed_hosts) or "none"),
            ("modules", ", ".join(sorted(sandbox.allowed_modules))),
        ],
        title="Sandbox",
    )
    if manifest.permissions.has_any() and (
        config.sandbox_preset == "restrictive" or not config.grant_manifest_permissions
    ):
        console.print()
        print_warning("Requested permissions are not granted under this sandbox")


@app.command()
def run(
    manifest_path: Path = typer.Argument(
        ...,
        help="Path to the plugin manifest (TOML).",
    ),
    event_type: str = typer.Option(
        "command",
        "--event",
        "-e",
        help=f"Event type: {', '.join(EVENT_TYPES)}.",
    ),
    name: Optional[str] = typer.Option(
        None,
        "--name",
        "-n",
        help="Event name (command and custom events).",
    ),
    data: Optional[str] = typer.Option(
        None,
        "--data",
        "-d",
        help="Extra event fields as a JSON object.",
    ),
    preset: Optional[str] = typer.Option(
        None,
        "--preset",
        "-p",
        help=PRESET_HELP,
    ),
) -> None:
    """
    Load a plugin, initialize it, deliver one event and print the result.

    Notifications and log lines from the plugin are echoed to the console.
    """
    fields: dict = {}
    if data:
        try:
            fields = json.loads(data)
        except json.JSONDecodeError as e:
            print_error("--data is not valid JSON", details=str(e))
            raise typer.Exit(2)
        if not isinstance(fields, dict):
            print_error("--data must be a JSON object")
            raise typer.Exit(2)
    fields["type"] = event_type
    if name is not None:
        fields["name"] = name

    settings = Settings()
    builder = (
        PluginContextBuilder(settings.APP_NAME, settings.APP_VERSION)
        .on_notify(lambda message: console.print(f"[bold blue]notify:[/bold blue] {escape(message)}"))
        .on_log(lambda level, message: console.print(f"[dim]{level.value}: {escape(message)}[/dim]"))
    )
    host_config = _host_config(preset)
    host = PluginHost.from_settings(settings, builder)
    host.config.sandbox_preset = host_config.sandbox_preset

    try:
        plugin = host.load_from_manifest(manifest_path)
        event = decode_event(fields)
        if not host.init(plugin.id):
            registered = host.get_registered(plugin.id)
            last_error = registered.last_error if registered else None
            print_error(f"Plugin {plugin.id} failed to initialize", details=last_error)
            raise typer.Exit(1)
        result = host.dispatch(event)
    except OSError as e:
        print_error(f"Cannot read plugin files: {e}")
        raise typer.Exit(1)
    except PluginError as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        host.shutdown_all()

    print_json({
        "event": event.to_dict(),
        "handled_by": result.handled_by,
        "responses": [
            {"plugin": plugin_id, "response": response.to_dict()}
            for plugin_id, response in result.responses
        ],
        "errors": result.errors,
    })
    if result.errors:
        raise typer.Exit(1)


@app.command()
def presets() -> None:
    """Show the built-in sandbox presets."""
    rows = []
    for preset_name in PRESETS:
        config = SandboxConfig.preset(preset_name)
        rows.append([
            preset_name,
            format_bytes(config.memory_limit),
            f"{config.instruction_limit:,}",
            f"{config.timeout_ms} ms",
            "yes" if config.allow_network else "no",
            ", ".join(sorted(config.allowed_modules)),
        ])
    print_table(
        "Sandbox presets",
        ["Preset", "Memory", "Instructions", "Timeout", "Network", "Modules"],
        rows,
        styles=["cyan"],
    )
