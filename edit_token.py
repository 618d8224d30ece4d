#!/usr/bin/env python3
"""
Browser Session Manager - API Token Management CLI

Manage the API tokens callers use as 'Authorization: Bearer <token>'.
Tokens are stored in auth.yaml as bcrypt hashes (12 rounds); the plain token
is printed once when it is created and cannot be recovered afterwards.

Usage:
    python3 edit_token.py list                 List all tokens
    python3 edit_token.py add <name>           Create a token
    python3 edit_token.py rotate <name>        Replace a token with a new one
    python3 edit_token.py remove <name>        Remove a token

If auth.yaml does not exist, it is created.
"""

import argparse
import secrets
import sys
from datetime import datetime
from pathlib import Path

import bcrypt
import yaml

CONFIG_PATH = Path(__file__).parent / "auth.yaml"
TOKEN_BYTES = 32


def load_config(path: Path) -> dict:
    """Load auth.yaml, or start an empty config if it does not exist."""
    config = {}
    if path.exists():
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        print(f"Error: {path} must be a YAML mapping.")
        sys.exit(1)

    # Ensure tokens dict exists
    if "tokens" not in config or config["tokens"] is None:
        config["tokens"] = {}

    return config


def save_config(path: Path, config: dict) -> None:
    """Write config back to auth.yaml preserving readability."""
    with open(path, "w") as f:
        yaml.dump(
            config, f,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
            width=120,
        )
    path.chmod(0o600)


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """Hash a token with bcrypt (random salt, 12 rounds)."""
    return bcrypt.hashpw(
        token.encode("utf-8"),
        bcrypt.gensalt(rounds=12),
    ).decode("utf-8")


def _issue(config: dict, name: str) -> str:
    token = generate_token()
    config["tokens"][name] = {
        "token_hash": hash_token(token),
        "created_at": datetime.now().isoformat(timespec="seconds"),
    }
    return token


def _print_token(name: str, token: str) -> None:
    print(f"Token for '{name}' (shown only once):")
    print()
    print(f"    {token}")
    print()
    print("Send it as: Authorization: Bearer <token>")


# =========================================================================
# Subcommands
# =========================================================================

def cmd_list(args: argparse.Namespace) -> None:
    """List all tokens."""
    config = load_config(args.config)
    tokens = config["tokens"]

    if not tokens:
        print("No API tokens configured.")
        print(f"Add one with: python3 {Path(__file__).name} add <name>")
        return

    print(f"{'Name':<20} {'Created'}")
    print("-" * 45)
    for name, info in sorted(tokens.items()):
        created = (info or {}).get("created_at", "unknown")
        print(f"{name:<20} {created}")
    print(f"\n{len(tokens)} token(s) total.")


def cmd_add(args: argparse.Namespace) -> None:
    """Create a new token."""
    config = load_config(args.config)
    if args.name in config["tokens"]:
        print(f"Error: Token '{args.name}' already exists.")
        print("Use 'rotate' to replace it, or 'remove' first.")
        sys.exit(1)

    token = _issue(config, args.name)
    save_config(args.config, config)
    _print_token(args.name, token)


def cmd_rotate(args: argparse.Namespace) -> None:
    """Replace an existing token."""
    config = load_config(args.config)
    if args.name not in config["tokens"]:
        print(f"Error: Token '{args.name}' not found.")
        sys.exit(1)

    token = _issue(config, args.name)
    save_config(args.config, config)
    _print_token(args.name, token)


def cmd_remove(args: argparse.Namespace) -> None:
    """Remove a token."""
    config = load_config(args.config)
    if args.name not in config["tokens"]:
        print(f"Error: Token '{args.name}' not found.")
        sys.exit(1)

    if not args.yes:
        confirm = input(f"Remove token '{args.name}'? [y/N]: ").strip().lower()
        if confirm != "y":
            print("Cancelled.")
            return

    del config["tokens"][args.name]
    save_config(args.config, config)
    print(f"Token '{args.name}' removed.")


# =========================================================================
# Main
# =========================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage Browser Session Manager API tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python3 edit_token.py add portal       Create a token for the portal\n"
            "  python3 edit_token.py list             Show all tokens\n"
            "  python3 edit_token.py rotate portal    Replace the portal token\n"
            "  python3 edit_token.py remove portal    Delete a token\n"
        ),
    )
    parser.add_argument("--config", type=Path, default=CONFIG_PATH, help="Path to auth.yaml")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sp_list = subparsers.add_parser("list", help="List all tokens")
    sp_list.set_defaults(func=cmd_list)

    sp_add = subparsers.add_parser("add", help="Create a token")
    sp_add.add_argument("name", help="Name of the caller the token is for")
    sp_add.set_defaults(func=cmd_add)

    sp_rot = subparsers.add_parser("rotate", help="Replace a token")
    sp_rot.add_argument("name", help="Token to replace")
    sp_rot.set_defaults(func=cmd_rotate)

    sp_rm = subparsers.add_parser("remove", help="Remove a token")
    sp_rm.add_argument("name", help="Token to remove")
    sp_rm.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    sp_rm.set_defaults(func=cmd_remove)

    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
