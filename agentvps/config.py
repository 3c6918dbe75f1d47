"""Run configuration: defaults, environment parsing and serialization."""

import json
import os
import re
from dataclasses import asdict, dataclass, field, fields

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .utils import warn

SERVER_TYPES = {
    "cpx11": "2 GB /  2 CPU  ~$6/mo   Light usage",
    "cpx21": "4 GB /  3 CPU  ~$11/mo  Recommended",
    "cpx31": "8 GB /  4 CPU  ~$19/mo  Heavy usage",
    "cpx41": "16 GB / 8 CPU  ~$34/mo  Power user",
}

LOCATIONS = {
    "ash": "Ashburn, US (US East)",
    "hil": "Hillsboro, US (US West)",
    "nbg1": "Nuremberg, DE (Europe)",
    "hel1": "Helsinki, FI (Europe)",
}

USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

# (field name, environment variable, human label)
FEATURES = [
    ("install_homebrew", "INSTALL_HOMEBREW", "Homebrew"),
    ("install_node", "INSTALL_NODE", "Node.js 22"),
    ("install_bun", "INSTALL_BUN", "Bun"),
    ("install_claude_code", "INSTALL_CLAUDE_CODE", "Claude Code"),
    ("install_codex", "INSTALL_CODEX", "Codex"),
    ("install_gemini_cli", "INSTALL_GEMINI_CLI", "Gemini CLI"),
    ("install_opencode", "INSTALL_OPENCODE", "OpenCode"),
    ("install_docker", "INSTALL_DOCKER", "Docker"),
    ("install_tailscale", "INSTALL_TAILSCALE", "Tailscale"),
]

_SETTINGS = [
    ("hetzner_token", "HETZNER_TOKEN"),
    ("server_type", "SERVER_TYPE"),
    ("location", "SERVER_LOCATION"),
    ("image", "SERVER_IMAGE"),
    ("server_name", "SERVER_NAME"),
    ("user", "NEW_USER"),
    ("ssh_port", "SSH_PORT"),
    ("ssh_key_path", "SSH_KEY_PATH"),
]

_TRUE = {"true", "yes", "y", "1", "on"}
_FALSE = {"false", "no", "n", "0", "off"}


def parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be true or false, got '{value}'")


@dataclass(frozen=True)
class Configuration:
    """Resolved choices for one run. Every field has a default."""

    hetzner_token: str = field(default="", repr=False)
    server_type: str = "cpx21"
    location: str = "ash"
    image: str = "ubuntu-24.04"
    server_name: str = ""
    user: str = "ubuntu"
    ssh_port: int = 22
    ssh_key_path: str = ""

    install_homebrew: bool = True
    install_node: bool = True
    install_bun: bool = True
    install_claude_code: bool = True
    install_codex: bool = True
    install_gemini_cli: bool = True
    install_opencode: bool = True
    install_docker: bool = True
    install_tailscale: bool = False

    def __post_init__(self):
        if not USERNAME_RE.match(self.user):
            raise ConfigurationError(
                f"Invalid username '{self.user}' "
                "(lowercase letters, digits, '_' or '-', max 32 chars)"
            )
        if not 0 < self.ssh_port < 65536:
            raise ConfigurationError(f"Invalid SSH port: {self.ssh_port}")

    @property
    def npm_agents(self) -> bool:
        """True when any agent CLI installed through npm is enabled."""
        return self.install_codex or self.install_gemini_cli or self.install_opencode

    @property
    def needs_node(self) -> bool:
        return self.install_node or self.npm_agents

    def enabled_features(self) -> list[str]:
        return [label for name, _, label in FEATURES if getattr(self, name)]

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Configuration":
        """Build a configuration from environment variables.

        Reads a ``.env`` file in the working directory first when ``environ``
        is not given.

        :raises ConfigurationError: On malformed values
        """
        if environ is None:
            load_dotenv()
            environ = dict(os.environ)

        values = {}
        for name, var in _SETTINGS:
            if environ.get(var):
                values[name] = environ[var]
        for name, var, _ in FEATURES:
            if environ.get(var):
                values[name] = parse_bool(var, environ[var])
        if "ssh_port" in values:
            try:
                values["ssh_port"] = int(values["ssh_port"])
            except ValueError:
                raise ConfigurationError(f"SSH_PORT must be a number, got '{values['ssh_port']}'")

        config = cls(**values)
        if config.server_type not in SERVER_TYPES:
            warn(f"Unrecognized server type '{config.server_type}', passing it to Hetzner as-is")
        if config.location not in LOCATIONS:
            warn(f"Unrecognized location '{config.location}', passing it to Hetzner as-is")
        return config

    def to_json(self) -> str:
        """Serialize for the target host. The API token is never included."""
        data = asdict(self)
        data.pop("hetzner_token")
        return json.dumps(data, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "Configuration":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid configuration JSON: {e}")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        data.pop("hetzner_token", None)
        return cls(**data)
