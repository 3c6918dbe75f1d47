"""Interactive questions that build a Configuration before provisioning."""

import dataclasses
from collections.abc import Callable

from rich import print
from rich.prompt import Confirm, Prompt

from .config import FEATURES, LOCATIONS, SERVER_TYPES, USERNAME_RE, Configuration
from .providers import HetznerProvider

TOKEN_URL = "https://console.hetzner.cloud/"


class WizardCancelled(Exception):
    """The operator declined the final confirmation."""


def ask_token(
    current: str,
    validate: Callable[[str], bool] | None = None,
) -> str:
    """Ask for an API token until one authenticates.

    :param current: Token already configured; offered as-is first
    :param validate: Returns True if the token works (default: list servers)
    """
    if validate is None:
        validate = lambda t: HetznerProvider(t).validate_auth()  # noqa: E731

    token = current
    while True:
        if not token:
            print(f"  Create a Read & Write API token at [cyan]{TOKEN_URL}[/cyan]")
            print("  (Project > Security > API Tokens)")
            token = Prompt.ask("  Hetzner API token", password=True).strip()
            if not token:
                continue
        print("  Checking token... ", end="")
        if validate(token):
            print("[green]valid[/green]")
            return token
        print("[red]rejected[/red]")
        token = ""


def choose(title: str, options: dict[str, str], default: str) -> str:
    """Numbered menu over ``options``; returns the chosen key."""
    keys = list(options)
    print(f"\n  [bold]{title}[/bold]")
    for n, key in enumerate(keys, 1):
        print(f"    {n}) {key:<6} {options[key]}")
    default_n = str(keys.index(default) + 1) if default in keys else "1"
    answer = Prompt.ask("  Choice", choices=[str(n) for n in range(1, len(keys) + 1)], default=default_n)
    return keys[int(answer) - 1]


def ask_username(default: str) -> str:
    while True:
        name = Prompt.ask("\n  Username for the server", default=default).strip()
        if USERNAME_RE.match(name):
            return name
        print("  [red]Use lowercase letters, digits, '_' or '-' (max 32 chars, not starting with a digit)[/red]")


def print_summary(config: Configuration) -> None:
    print("\n  [bold]Summary[/bold]")
    print(f"    Server:   {config.server_type} ({SERVER_TYPES.get(config.server_type, 'custom')})")
    print(f"    Location: {config.location} ({LOCATIONS.get(config.location, 'custom')})")
    print(f"    User:     {config.user}")
    print(f"    Install:  {', '.join(config.enabled_features()) or 'nothing optional'}")


def run_wizard(config: Configuration) -> Configuration:
    """Walk the operator through every choice, starting from ``config``.

    :raises WizardCancelled: If the operator declines the summary
    """
    print("\n  [bold]Coding agent VPS setup[/bold]")
    print("  This creates a Hetzner server, locks it down and installs coding agents.\n")

    changes = {"hetzner_token": ask_token(config.hetzner_token)}
    changes["server_type"] = choose("Server size", SERVER_TYPES, config.server_type)
    changes["location"] = choose("Location", LOCATIONS, config.location)
    changes["user"] = ask_username(config.user)

    print("\n  [bold]Tools[/bold]")
    for name, _, label in FEATURES:
        changes[name] = Confirm.ask(f"    Install {label}?", default=getattr(config, name))

    config = dataclasses.replace(config, **changes)
    print_summary(config)
    if not Confirm.ask("\n  Create this server?", default=True):
        raise WizardCancelled()
    return config
