"""Client provisioning for model-runner: ``model-runner-keys generate-key``.

Generates a bearer token for a new API client and records its scrypt hash in
clients.yaml. The token is printed once and never stored.
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from model_runner.auth.clients import new_client_token
from model_runner.auth.permissions import Permission
from model_runner.core.config import get_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="model-runner-keys", description="Manage model-runner API clients")
    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate-key", help="Create a client and print its bearer token")
    generate.add_argument("-n", "--name", required=True, help="Name of the API client")
    generate.add_argument(
        "-p",
        "--permission",
        nargs="+",
        default=[],
        help="Permissions to grant, e.g. use_self status_other",
    )
    generate.add_argument(
        "--clients-file",
        type=Path,
        default=None,
        help="clients.yaml to update (defaults to the configured one)",
    )
    return parser


def _append_client(path: Path, entry: dict[str, Any]) -> None:
    raw: dict[str, Any] = {}
    if path.exists():
        with path.open() as f:
            raw = yaml.safe_load(f) or {}
    clients = raw.get("clients") or []
    clients.append(entry)
    raw["clients"] = clients

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        yaml.safe_dump(raw, f, sort_keys=False)


def generate_key(name: str, permissions: list[str], clients_file: Path) -> str:
    """Create a client entry in clients_file and return its bearer token.

    Raises:
        ValueError: If a permission name is unknown.
    """
    granted = Permission.from_names(permissions)
    client_id, token, key_hash = new_client_token()
    _append_client(
        clients_file,
        {
            "id": client_id,
            "name": name,
            "key_hash": key_hash,
            "permissions": [flag.name.lower() for flag in Permission if flag in granted],
            "created_at": datetime.now(timezone.utc),
        },
    )
    return token


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    clients_file = args.clients_file or get_settings().clients_file
    try:
        token = generate_key(args.name, args.permission, clients_file)
    except ValueError as e:
        parser.error(str(e))

    print(f"Generated new API key with permissions {', '.join(args.permission) or 'none'} in {clients_file}")
    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
