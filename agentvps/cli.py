#!/usr/bin/env python3
"""Provision a Hetzner server for coding agents.

Creates the server, hardens it and installs agent tooling in one run.

Usage: agentvps [options] | agentvps servers

Examples:
    agentvps
    HETZNER_TOKEN=... agentvps --no-wizard
    agentvps servers
"""

import os
import sys

import cyclopts
from rich import print

from .config import Configuration
from .exceptions import AgentVPSError
from .orchestrator import run_initiator, run_target
from .providers import get_provider
from .utils import error, log, setup_logging
from .wizard import WizardCancelled

app = cyclopts.App(
    name="agentvps", help="Provision a hardened Hetzner server for coding agents", sort_key=None
)


@app.default
def main(
    *,
    on_server: bool = False,
    no_wizard: bool = False,
    config_json: str | None = None,
    log_level: str | None = None,
):
    """Create a server and set it up, or run the setup on this server.

    :param on_server: Run the setup pipeline on this machine (used after the package is shipped to the server)
    :param no_wizard: Skip the interactive questions and take every value from the environment
    :param config_json: Serialized configuration for --on-server runs
    :param log_level: Logging level (default: AGENTVPS_LOG_LEVEL or INFO)
    """
    setup_logging(log_level or os.environ.get("AGENTVPS_LOG_LEVEL", "INFO"))

    try:
        if on_server:
            config = Configuration.from_json(config_json) if config_json else Configuration.from_env()
            run_target(config)
            return

        config = Configuration.from_env()
        interactive = not no_wizard and sys.stdin.isatty()
        run_initiator(config, interactive=interactive)
    except WizardCancelled:
        log("Cancelled, nothing was created")
    except AgentVPSError as e:
        error(str(e))


@app.command(name="servers")
def list_servers(*, log_level: str = "INFO"):
    """List servers in the Hetzner project.

    :param log_level: Logging level
    """
    setup_logging(log_level)
    try:
        servers = get_provider(Configuration.from_env()).list_instances()
    except AgentVPSError as e:
        error(str(e))
        return

    if not servers:
        log("No servers found")
        return

    max_name = max(len(s["name"]) for s in servers)
    max_ip = max(len(s["ip"]) for s in servers)
    max_location = max(len(s["location"]) for s in servers)

    name_header = "NAME".ljust(max_name)
    ip_header = "IP ADDRESS".ljust(max_ip)
    location_header = "LOCATION".ljust(max_location)
    print(f"  {name_header}  {ip_header}  {location_header}  STATUS")
    print(f"  {'-' * max_name}  {'-' * max_ip}  {'-' * max_location}  {'---'}")

    for s in servers:
        name = s["name"].ljust(max_name)
        ip = s["ip"].ljust(max_ip)
        location = s["location"].ljust(max_location)
        print(f"  {name}  {ip}  {location}  {s['status']}")


if __name__ == "__main__":
    app()
