# GoClaw Workload Manifest
# Renders the Akash SDL (v2.0) for one chat-bot container.
#
# render_manifest() is pure: no I/O, no clock, no randomness. Identical inputs
# produce byte-identical output, so tests compare literal text.

import re
from dataclasses import dataclass, field

from errors import ValidationError

# Model selector (what users pick) -> inference model id served by the gateway
SUPPORTED_MODELS = {
    "claude-opus-4.5": "MiniMaxAI/MiniMax-M2.5",
    "gpt-3.2": "meta-llama/Llama-3.3-70B-Instruct",
    "gemini-3-flash": "meta-llama/Llama-3.3-70B-Instruct",
}

SUPPORTED_CHANNELS = ("telegram", "discord", "whatsapp")

TELEGRAM_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")

DEFAULT_PRICING_DENOM = (
    "ibc/170C677610AC31DF0904FFE09CD3B5C657492170E7E52372E48756B71E56F2F1"
)


@dataclass(frozen=True)
class ManifestSecrets:
    channel: str
    channel_token: str
    gateway_token: str
    inference_api_key: str
    model: str


@dataclass(frozen=True)
class ManifestParams:
    """Fixed workload parameters. Defaults match the production image."""

    service_name: str = "openclaw"
    image: str = "ghcr.io/fenilmodi00/openclaw:latest"
    inference_base_url: str = "https://api.akashml.com/v1"
    api_protocol: str = "openai-completions"
    gateway_port: int = 18789
    gateway_exposed_as: int = 80
    bridge_port: int = 18790
    bridge_exposed_as: int = 8080
    cpu_units: float = 1.5
    memory: str = "3Gi"
    ephemeral_storage: str = "2Gi"
    persistent_storage: str = "10Gi"
    storage_class: str = "beta3"
    volume_name: str = "openclaw-data"
    home_dir: str = "/home/node"
    pricing_denom: str = DEFAULT_PRICING_DENOM
    pricing_amount: int = 1000
    context_window: int = 200000
    max_tokens: int = 8192
    extra_env: dict = field(default_factory=dict)


def sanitize_env_value(value):
    """Make a value safe inside a double-quoted YAML scalar."""
    clean = re.sub(r"[\n\r\0]", "", str(value))
    return clean.replace("\\", "\\\\").replace('"', '\\"')


def validate_secrets(secrets: ManifestSecrets):
    """Raise ValidationError naming the first bad field."""
    if secrets.model not in SUPPORTED_MODELS:
        raise ValidationError(
            "model", f"unsupported model {secrets.model!r}; "
            f"expected one of {', '.join(SUPPORTED_MODELS)}"
        )
    if secrets.channel not in SUPPORTED_CHANNELS:
        raise ValidationError(
            "channel", f"unsupported channel {secrets.channel!r}; "
            f"expected one of {', '.join(SUPPORTED_CHANNELS)}"
        )

    token = (secrets.channel_token or "").strip()
    if not token:
        raise ValidationError("channel_token", "channel token is required")
    if secrets.channel == "telegram" and not TELEGRAM_TOKEN_RE.match(token):
        raise ValidationError(
            "channel_token", "Telegram bot tokens look like <digits>:<token>"
        )
    if secrets.channel == "discord" and any(c.isspace() for c in token):
        raise ValidationError("channel_token", "Discord bot tokens cannot contain whitespace")

    if not (secrets.gateway_token or "").strip():
        raise ValidationError("gateway_token", "gateway token is required")
    if not (secrets.inference_api_key or "").strip():
        raise ValidationError("inference_api_key", "inference API key is required")


def _channel_env(channel, token):
    prefix = channel.upper()
    return [
        (f"{prefix}_BOT_TOKEN", token),
        (f"{prefix}_ENABLED", "true"),
    ]


def build_env(secrets: ManifestSecrets, params: ManifestParams):
    """Ordered (name, value) pairs for the container environment."""
    home = params.home_dir
    env = [
        ("HOME", home),
        ("TERM", "xterm-256color"),
        ("MODEL_ID", SUPPORTED_MODELS[secrets.model]),
        ("BASE_URL", params.inference_base_url),
        ("API_KEY", secrets.inference_api_key),
        ("API_PROTOCOL", params.api_protocol),
        ("CONTEXT_WINDOW", params.context_window),
        ("MAX_TOKENS", params.max_tokens),
        ("WORKSPACE", f"{home}/.openclaw/workspace"),
        ("OPENCLAW_GATEWAY_TOKEN", secrets.gateway_token),
        ("OPENCLAW_GATEWAY_BIND", "lan"),
        ("OPENCLAW_GATEWAY_PORT", params.gateway_port),
        ("OPENCLAW_BRIDGE_PORT", params.bridge_port),
    ]
    env.extend(_channel_env(secrets.channel, secrets.channel_token.strip()))
    env.extend(sorted(params.extra_env.items()))
    return env


def render_manifest(secrets: ManifestSecrets, params: ManifestParams = None) -> str:
    params = params or ManifestParams()
    validate_secrets(secrets)

    name = params.service_name
    env_lines = "\n".join(
        f'      - "{key}={sanitize_env_value(value)}"'
        for key, value in build_env(secrets, params)
    )

    return f"""version: "2.0"

services:
  {name}:
    image: {params.image}
    expose:
      - port: {params.gateway_port}
        as: {params.gateway_exposed_as}
        to:
          - global: true
      - port: {params.bridge_port}
        as: {params.bridge_exposed_as}
        to:
          - global: true
    env:
{env_lines}
    params:
      storage:
        {params.volume_name}:
          mount: {params.home_dir}/.openclaw
          readOnly: false

profiles:
  compute:
    {name}:
      resources:
        cpu:
          units: {params.cpu_units}
        memory:
          size: {params.memory}
        storage:
          - size: {params.ephemeral_storage}
          - name: {params.volume_name}
            size: {params.persistent_storage}
            attributes:
              persistent: true
              class: {params.storage_class}

  placement:
    akash:
      pricing:
        {name}:
          denom: {params.pricing_denom}
          amount: {params.pricing_amount}

deployment:
  {name}:
    akash:
      profile: {name}
      count: 1
"""
