"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from boilermate.core.config_loader import BridgeConfig, load_config
from boilermate.core.errors import BoilerMateError
from boilermate.core.model import Function, coerce_function
from boilermate.core.service import BoilerService
from boilermate.publishers.console import ConsolePublisher
from boilermate.publishers.mqtt import MQTTPublisher

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help="Bridge between an NBE pellet boiler controller and MQTT")


def _configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        typer.echo(f"Warning: unknown log level '{level_name}', using INFO", err=True)
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


def _load(ctx: typer.Context, **overrides: object) -> BridgeConfig:
    options = ctx.obj or {}
    config = load_config(
        options.get("config_path"),
        overrides={
            "controller": options.get("controller"),
            "log_level": options.get("log_level"),
            **overrides,
        },
    )
    _configure_logging(config.log_level)
    return config


def _build_service(ctx: typer.Context, **overrides: object) -> BoilerService:
    return BoilerService(_load(ctx, **overrides))


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Path | None = typer.Option(None, "--config", help="Path to a YAML config file"),
    controller: str | None = typer.Option(
        None, "--controller", help="Controller URI, tcp://<serial>:<pin>@<host>:<port>"
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
) -> None:
    ctx.obj = {"config_path": config_path, "controller": controller, "log_level": log_level}


@app.command("discover")
def discover(ctx: typer.Context) -> None:
    """Discover the controller serial number and public key."""
    try:
        service = _build_service(ctx)
        session = service.discover()
        typer.echo(f"Serial: {session.serial}")
        typer.echo(f"Address: {service.config.controller.host}:{service.config.controller.port}")
        if session.rsa_key is None:
            typer.echo("Public key: <none>")
        else:
            typer.echo(f"Public key: RSA {session.rsa_key.n.bit_length()} bits, e={session.rsa_key.e}")
    except BoilerMateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("get")
def get_value(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Register path, e.g. 'boiler.*' or 'misc.rsa_key'"),
    function: int = typer.Option(int(Function.GET_SETUP), "--function", "-f", help="Function code to read with"),
) -> None:
    """Read registers from the controller and print them as key=value lines."""
    try:
        service = _build_service(ctx)
        response = service.get(path, coerce_function(function))
        if response.function == Function.UNKNOWN:
            typer.echo(f"Error: controller reported: {response.payload.get('error')}", err=True)
            raise typer.Exit(code=1)
        for key, value in response.payload.items():
            typer.echo(f"{key}={value}")
    except BoilerMateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("set")
def set_value(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Setting path, e.g. 'boiler.temp'"),
    value: str = typer.Argument(..., help="New value"),
) -> None:
    """Write one setting using an encrypted, PIN-authenticated request."""
    try:
        service = _build_service(ctx)
        response = service.set(path, value)
        typer.echo(f"Set {path}={value} (status {response.status})")
        for key, result in response.payload.items():
            typer.echo(f"  {key}={result}")
    except BoilerMateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("watch")
def watch(ctx: typer.Context) -> None:
    """Poll all categories and print change sets as JSON lines until interrupted."""
    try:
        service = _build_service(ctx)
        service.run(ConsolePublisher())
    except KeyboardInterrupt:
        typer.echo("Stopped", err=True)
    except BoilerMateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("run")
def run_bridge(
    ctx: typer.Context,
    mqtt: str | None = typer.Option(None, "--mqtt", help="Broker URI, mqtt[s]://[user:pass@]host[:port][/prefix]"),
) -> None:
    """Bridge the controller to an MQTT broker until interrupted."""
    try:
        service = _build_service(ctx, mqtt=mqtt)
        publisher = MQTTPublisher.from_url(service.config.mqtt_url)
        service.run(publisher)
    except KeyboardInterrupt:
        typer.echo("Stopped", err=True)
    except BoilerMateError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
