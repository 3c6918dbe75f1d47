"""Type definitions for agentvps."""

from dataclasses import dataclass
from pathlib import Path
from typing import TypedDict


class SSHKeyData(TypedDict, total=False):
    """SSH key as returned by the Hetzner API."""

    id: int
    name: str
    fingerprint: str
    public_key: str


class ServerData(TypedDict, total=False):
    """Server as returned by the Hetzner API."""

    id: int
    name: str
    status: str
    public_net: dict
    server_type: dict
    datacenter: dict


class ServerListItem(TypedDict):
    """Server information in list results."""

    name: str
    ip: str
    status: str
    location: str


@dataclass(frozen=True)
class KeyPair:
    """A local SSH key pair on disk."""

    private_path: Path

    @property
    def public_path(self) -> Path:
        return self.private_path.with_name(self.private_path.name + ".pub")

    def public_key(self) -> str:
        return self.public_path.read_text().strip()


@dataclass(frozen=True)
class Credential:
    """A local key pair registered with the provider."""

    key: KeyPair
    provider_id: int
    fingerprint: str


@dataclass(frozen=True)
class Instance:
    """A server created for this run."""

    id: int
    name: str
    server_type: str
    location: str
    ip: str
