"""SSH credentials and server provisioning on Hetzner Cloud."""

import base64
import binascii
import hashlib
import secrets
import subprocess
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from .client import HetznerClient
from .config import Configuration
from .exceptions import ConfigurationError, ProviderAPIError
from .types import Credential, Instance, KeyPair, ServerData, ServerListItem
from .utils import log, run_cmd, warn

KEY_NAME_PREFIX = "agentvps"
SERVER_NAME_PREFIX = "agent-vps"


def default_key_path() -> Path:
    return Path.home() / ".ssh" / "agentvps_ed25519"


def compute_fingerprint(public_key: str) -> str:
    """MD5 fingerprint of an OpenSSH public key, as Hetzner reports it.

    :param public_key: Key line, e.g. ``ssh-ed25519 AAAA... comment``
    :return: Colon-separated hex digest (``aa:bb:...``)
    :raises ConfigurationError: If the key material cannot be decoded
    """
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise ConfigurationError("Public key is not in OpenSSH format")
    try:
        decoded = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError):
        raise ConfigurationError("Public key is not in OpenSSH format")
    fingerprint = hashlib.md5(decoded).hexdigest()
    return ":".join(fingerprint[i : i + 2] for i in range(0, 32, 2))


def generate_key(path: Path) -> KeyPair:
    """Generate an ed25519 key pair without a passphrase.

    The comment carries the creation date so the key can be traced back to
    the run that made it.
    """
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    for existing in (path, path.with_name(path.name + ".pub")):
        existing.unlink(missing_ok=True)
    comment = f"{KEY_NAME_PREFIX}-{datetime.now():%Y%m%d}"
    try:
        run_cmd("ssh-keygen", "-q", "-t", "ed25519", "-f", str(path), "-N", "", "-C", comment)
    except subprocess.CalledProcessError as e:
        raise ConfigurationError(f"ssh-keygen failed: {e.stderr.strip()}")
    log(f"Created SSH key: '{path}'")
    return KeyPair(path)


def ensure_local_key(
    explicit_path: str | None = None,
    *,
    confirm: Callable[[str], bool] | None = None,
) -> KeyPair:
    """Pick the local key pair for this run.

    An explicit path that exists is used as given. Otherwise the dedicated
    default key is offered for reuse (accepted when ``confirm`` is None), and
    a new one is generated when it is missing or declined.

    :param explicit_path: Private key path supplied by the operator
    :param confirm: Yes/no prompt, default answer yes
    """
    if explicit_path:
        path = Path(explicit_path).expanduser()
        if path.exists():
            key = KeyPair(path)
            if not key.public_path.exists():
                raise ConfigurationError(f"Public key '{key.public_path}' not found next to '{path}'")
            log(f"Using provided SSH key: '{path}'")
            return key
        warn(f"SSH key '{path}' not found, falling back to the default key")

    path = default_key_path()
    key = KeyPair(path)
    if path.exists() and key.public_path.exists():
        log(f"Found existing key: '{path}'")
        if confirm is None or confirm("Use this key?"):
            return key

    log("Generating dedicated SSH key...")
    return generate_key(path)


def server_ip(server: ServerData) -> str:
    return ((server.get("public_net") or {}).get("ipv4") or {}).get("ip") or ""


def derive_server_name() -> str:
    return f"{SERVER_NAME_PREFIX}-{secrets.token_hex(4)}"


class HetznerProvider:
    """Cloud provider implementation for Hetzner Cloud."""

    provider_name = "hetzner"

    def __init__(self, token: str, client: HetznerClient | None = None):
        if not token and client is None:
            raise ConfigurationError("HETZNER_TOKEN required to talk to Hetzner")
        self.client = client or HetznerClient(token)

    def validate_auth(self) -> bool:
        """:return: True if the token can list servers"""
        try:
            self.client.list_servers()
        except ProviderAPIError:
            return False
        return True

    def find_key(self, fingerprint: str) -> dict | None:
        return next(
            (k for k in self.client.list_ssh_keys() if k.get("fingerprint") == fingerprint),
            None,
        )

    def register_key(self, key: KeyPair) -> Credential:
        """Upload the public key, reconciling with an existing upload by fingerprint.

        Hetzner rejects a second upload of the same key material, and nothing
        locally records earlier runs, so a failed create is resolved by
        looking the key up by fingerprint.

        :raises ProviderAPIError: If create failed and no registered key matches
        """
        public_key = key.public_key()
        fingerprint = compute_fingerprint(public_key)
        name = f"{KEY_NAME_PREFIX}-{int(time.time())}"

        log("Uploading SSH key to Hetzner...")
        try:
            created = self.client.create_ssh_key(name, public_key)
        except ProviderAPIError as create_error:
            existing = self.find_key(fingerprint)
            if existing is None:
                raise ProviderAPIError(
                    f"Failed to upload SSH key to Hetzner. Check your API token. ({create_error})",
                    status=create_error.status,
                    code=create_error.code,
                )
            log(f"SSH key already exists on Hetzner (id: {existing['id']})")
            return Credential(key, existing["id"], fingerprint)

        log(f"SSH key uploaded (id: {created['id']})")
        return Credential(key, created["id"], created.get("fingerprint") or fingerprint)

    def create_instance(self, config: Configuration, credential: Credential) -> Instance:
        """Create and start a server; fail if no address was assigned.

        There is no retry: a rejected create (quota, billing, bad parameter)
        needs the operator to fix something first.
        """
        name = config.server_name or derive_server_name()
        log(f"Creating server: {name} ({config.server_type} in {config.location})...")
        server = self.client.create_server(
            name,
            config.server_type,
            config.image,
            config.location,
            [credential.provider_id],
        )

        ip = server_ip(server)
        if not ip:
            raise ProviderAPIError(
                f"Server '{name}' was created without a public IPv4 address. "
                "Check the Hetzner console."
            )
        log(f"Server created! IP: {ip}")
        return Instance(
            id=server["id"],
            name=server.get("name", name),
            server_type=config.server_type,
            location=config.location,
            ip=ip,
        )

    def list_instances(self) -> list[ServerListItem]:
        return [
            {
                "name": s["name"],
                "ip": server_ip(s) or "N/A",
                "status": s.get("status", "unknown"),
                "location": ((s.get("datacenter") or {}).get("location") or {}).get("name", "?"),
            }
            for s in self.client.list_servers()
        ]


def get_provider(config: Configuration) -> HetznerProvider:
    """Get a provider for the configured account."""
    return HetznerProvider(config.hetzner_token)
