"""Secrets management: load signing key and API credentials from environment or config file.

Priority order:
1. Environment variables: PRIVATE_KEY, XAI_API_KEY (or OPENAI_API_KEY), API_KEY
2. Config file: ~/.spot_trader.json or custom path via ENV SPOT_TRADER_CONFIG_PATH
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional


class Credentials(NamedTuple):
    private_key: Optional[str]
    advisory_api_key: str
    admin_api_key: Optional[str] = None


def load_credentials(
    config_path: Optional[str] = None,
    require_private_key: bool = True,
) -> Credentials:
    """Load credentials from env or config file.

    Args:
        config_path: Optional override path to config file. If not provided,
                     checks SPOT_TRADER_CONFIG_PATH env var, then ~/.spot_trader.json
        require_private_key: False for paper trading, where nothing is signed

    Returns:
        Credentials with private_key, advisory_api_key and optional admin_api_key

    Raises:
        ValueError: If the signing key or the advisory key is missing
    """
    private_key = os.getenv("PRIVATE_KEY")
    advisory_api_key = os.getenv("XAI_API_KEY") or os.getenv("OPENAI_API_KEY")
    admin_api_key = os.getenv("API_KEY")

    if advisory_api_key and (private_key or not require_private_key):
        return Credentials(private_key, advisory_api_key, admin_api_key)

    if config_path is None:
        config_path = os.getenv("SPOT_TRADER_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".spot_trader.json")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        private_key = private_key or cfg.get("private_key")
        advisory_api_key = advisory_api_key or cfg.get("advisory_api_key")
        admin_api_key = admin_api_key or cfg.get("admin_api_key")

    if not advisory_api_key or (require_private_key and not private_key):
        raise ValueError(
            "Missing credentials. Provide via:\n"
            "  - Environment: PRIVATE_KEY, XAI_API_KEY (or OPENAI_API_KEY)\n"
            f"  - Config file: {config_path}\n"
            "  - SPOT_TRADER_CONFIG_PATH env var to override config location"
        )

    return Credentials(private_key, advisory_api_key, admin_api_key)


def save_config(
    config_path: str,
    private_key: str,
    advisory_api_key: str,
    admin_api_key: Optional[str] = None,
) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. The file is restricted to the owner (600).
    """
    config = {
        "private_key": private_key,
        "advisory_api_key": advisory_api_key,
    }
    if admin_api_key:
        config["admin_api_key"] = admin_api_key
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump(config, f, indent=2)

    # Windows doesn't support chmod
    if os.name != "nt":
        cfg_file.chmod(0o600)
