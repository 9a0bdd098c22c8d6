"""
sshwrap/cli.py

Command-line interface for sshwrap.

Usage:
    sshwrap --host lab.example.com --user alice exec "uname -a"
    sshwrap --profile lab ls /var/log --opt -l
    sshwrap --profile lab send build/*.tar.gz /tmp/incoming/
    sshwrap --profile lab recv /var/log/syslog ./logs/
    sshwrap --profile lab check
    sshwrap --profile lab disconnect
"""

import sys
import json
import asyncio
import getpass
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from .client import SSHClientWrapper
from .config import HostInfo, load_hosts
from .credentials import SecretProvider
from .errors import SSHWrapperError


def prompt_provider(label: str) -> SecretProvider:
    """SecretProvider asking on the controlling terminal, off the event loop."""
    async def ask() -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, getpass.getpass, f"{label}: ")
    return SecretProvider(ask)


def resolve_host(
    hosts_file: Optional[str],
    profile: Optional[str],
    overrides: dict,
) -> HostInfo:
    """
    Build the HostInfo for this invocation.

    A profile from the hosts file is the base; command-line values win.

    Raises:
        click.UsageError: no host given, or unknown profile
    """
    overrides = {k: v for k, v in overrides.items() if v is not None}

    if profile:
        profiles = load_hosts(Path(hosts_file) if hosts_file else None)
        if profile not in profiles:
            raise click.UsageError(f"Profile '{profile}' not found.")
        return replace(profiles[profile], **overrides)

    if not overrides.get("host"):
        raise click.UsageError("Either --host or --profile is required.")
    return HostInfo(**overrides)


def run(ctx, coro_factory):
    """Run coro_factory(client) on a fresh event loop, reporting sshwrap errors."""
    client = SSHClientWrapper(ctx.obj["host_info"])

    async def main():
        return await coro_factory(client)

    try:
        return asyncio.run(main())
    except SSHWrapperError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except (TypeError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


@click.group()
@click.option("--hosts-file", default=None, type=click.Path(dir_okay=False), help="Host profiles YAML file")
@click.option("--profile", default=None, help="Host profile name from the hosts file")
@click.option("--host", default=None, help="Destination host")
@click.option("--user", default=None, help="Login name")
@click.option("--port", default=None, type=int, help="SSH port")
@click.option("--key-file", default=None, help="Private key file")
@click.option("--password-prompt", is_flag=True, help="Prompt for a password when ssh asks")
@click.option("--passphrase-prompt", is_flag=True, help="Prompt for a key passphrase when ssh asks")
@click.option("--no-strict", is_flag=True, help="Disable strict host key checking")
@click.option("--ssh-command", default=None, help="ssh executable")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("-v", "--verbose", count=True, help="-v for progress, -vv for debug and terminal output")
@click.pass_context
def cli(ctx, hosts_file, profile, host, user, port, key_file, password_prompt,
        passphrase_prompt, no_strict, ssh_command, output_json, verbose):
    """sshwrap - run commands and copy files over a shared ssh master connection."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {
        "host": host,
        "user": user,
        "port": port,
        "key_file": key_file,
        "no_strict_host_key_checking": True if no_strict else None,
        "ssh_command": ssh_command,
    }
    if password_prompt:
        overrides["password"] = prompt_provider("Password")
    if passphrase_prompt:
        overrides["passphrase"] = prompt_provider("Key passphrase")

    ctx.ensure_object(dict)
    ctx.obj["json"] = output_json
    ctx.obj["host_info"] = resolve_host(hosts_file, profile, overrides)


@cli.command("exec")
@click.argument("cmd")
@click.option("-t", "--timeout", default=0, type=int, help="Seconds before the command is killed")
@click.pass_context
def exec_command(ctx, cmd, timeout):
    """Run CMD on the host, streaming its output. Exits with CMD's exit code."""
    def echo(text):
        click.echo(text, nl=False)

    rc = run(ctx, lambda client: client.exec(cmd, timeout, echo))
    sys.exit(rc)


@cli.command("ls")
@click.argument("target")
@click.option("-o", "--opt", "ls_opt", multiple=True, help="Option passed to ls (repeatable)")
@click.option("-t", "--timeout", default=0, type=int, help="Seconds before ls is killed")
@click.pass_context
def list_remote(ctx, target, ls_opt, timeout):
    """List TARGET on the host."""
    result = run(ctx, lambda client: client.ls(target, list(ls_opt), timeout))

    if isinstance(result, int):
        click.echo(f"ls failed with exit code {result}", err=True)
        sys.exit(result)

    if ctx.obj["json"]:
        click.echo(json.dumps(result, indent=2))
    else:
        for entry in result:
            click.echo(entry)


@cli.command("send")
@click.argument("src", nargs=-1, required=True)
@click.argument("dst")
@click.option("-o", "--opt", multiple=True, help="Option passed to rsync (repeatable)")
@click.option("-t", "--timeout", default=0, type=int, help="Seconds before rsync is killed")
@click.pass_context
def send_files(ctx, src, dst, opt, timeout):
    """Copy local SRC... to DST on the host."""
    sent = run(ctx, lambda client: client.send(list(src), dst, list(opt), timeout))
    if not sent:
        click.echo("Nothing to send: no source file matched.", err=True)
        sys.exit(1)


@cli.command("recv")
@click.argument("src", nargs=-1, required=True)
@click.argument("dst")
@click.option("-o", "--opt", multiple=True, help="Option passed to rsync (repeatable)")
@click.option("-t", "--timeout", default=0, type=int, help="Seconds before rsync is killed")
@click.pass_context
def recv_files(ctx, src, dst, opt, timeout):
    """Copy SRC... on the host to local DST."""
    run(ctx, lambda client: client.recv(list(src), dst, list(opt), timeout))


@cli.command("check")
@click.option("-t", "--timeout", default=None, type=int, help="Seconds allowed for the check")
@click.pass_context
def check_connection(ctx, timeout):
    """Check that the host can be logged into."""
    host_info = ctx.obj["host_info"]
    ok = run(ctx, lambda client: client.can_connect(timeout))

    if ctx.obj["json"]:
        click.echo(json.dumps({"host": host_info.destination, "connected": ok}))
    else:
        click.echo(f"{host_info.destination}: {'OK' if ok else 'FAILED'}")
    if not ok:
        sys.exit(1)


@cli.command("disconnect")
@click.pass_context
def disconnect_master(ctx):
    """Close the master connection to the host."""
    run(ctx, lambda client: client.disconnect())
    click.echo(f"{ctx.obj['host_info'].destination}: disconnected")


def main():
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
