#!/usr/bin/env python3
"""
Terminal Gateway: User Management CLI

Manage local users and the allowed-identity list in config.yaml (the
``auth`` section). Passwords are stored as bcrypt hashes with random
per-user salt (12 rounds).

Usage:
    python3 edit_user.py list                  List users and allowed identities
    python3 edit_user.py add <username>        Add a user (prompts for password)
    python3 edit_user.py remove <username>     Remove a user
    python3 edit_user.py passwd <username>     Change a user's password
    python3 edit_user.py allow <identity>      Add an identity to the allow-list
    python3 edit_user.py disallow <identity>   Remove an identity from the allow-list

Use --config to edit a file other than ./config.yaml. The file is created
if it does not exist.
"""

import argparse
import getpass
import sys
from datetime import datetime
from pathlib import Path

import bcrypt
import yaml

DEFAULT_CONFIG_PATH = Path("config.yaml")


def load_config(path: Path) -> dict:
    """Load the config file, ensuring the auth section is in place."""
    config: dict = {}
    if path.exists():
        with open(path) as f:
            config = yaml.safe_load(f) or {}

    auth = config.get("auth")
    if not isinstance(auth, dict):
        auth = config["auth"] = {}
    if auth.get("users") is None:
        auth["users"] = {}
    if auth.get("allowed_identities") is None:
        auth["allowed_identities"] = []
    return config


def save_config(path: Path, config: dict) -> None:
    """Write config back preserving readability."""
    with open(path, "w") as f:
        yaml.dump(
            config, f,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
            width=120,
        )


def prompt_password(confirm: bool = True) -> str:
    """Prompt for a password with optional confirmation."""
    while True:
        password = getpass.getpass("Password: ")
        if len(password) < 4:
            print("Password must be at least 4 characters.")
            continue
        if confirm:
            password2 = getpass.getpass("Confirm password: ")
            if password != password2:
                print("Passwords do not match. Try again.")
                continue
        return password


def hash_password(password: str) -> str:
    """Hash a password with bcrypt (random salt, 12 rounds)."""
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(rounds=12),
    ).decode("utf-8")


# =========================================================================
# Operations (no prompting; used by the subcommands and tests)
# =========================================================================

class UserError(Exception):
    pass


def add_user(config: dict, username: str, password: str) -> None:
    users = config["auth"]["users"]
    if username in users:
        raise UserError(f"User '{username}' already exists.")
    users[username] = {
        "password_hash": hash_password(password),
        "created_at": datetime.now().isoformat(timespec="seconds"),
    }


def remove_user(config: dict, username: str) -> None:
    users = config["auth"]["users"]
    if username not in users:
        raise UserError(f"User '{username}' not found.")
    del users[username]


def set_password(config: dict, username: str, password: str) -> None:
    users = config["auth"]["users"]
    if username not in users:
        raise UserError(f"User '{username}' not found.")
    users[username]["password_hash"] = hash_password(password)


def allow_identity(config: dict, identity: str) -> bool:
    """Returns False if the identity was already allowed."""
    allowed = config["auth"]["allowed_identities"]
    if identity in allowed:
        return False
    allowed.append(identity)
    return True


def disallow_identity(config: dict, identity: str) -> None:
    allowed = config["auth"]["allowed_identities"]
    if identity not in allowed:
        raise UserError(f"'{identity}' is not in the allowed list.")
    allowed.remove(identity)


# =========================================================================
# Subcommands
# =========================================================================

def cmd_list(args: argparse.Namespace) -> None:
    """List local users and allowed identities."""
    config = load_config(args.config)
    users = config["auth"]["users"]
    allowed = config["auth"]["allowed_identities"]

    if not users:
        print("No local users configured.")
        print(f"Add one with: python3 {Path(__file__).name} add <username>")
    else:
        print(f"{'Username':<20} {'Created'}")
        print("-" * 45)
        for name, info in sorted(users.items()):
            created = (info or {}).get("created_at", "unknown")
            print(f"{name:<20} {created}")
        print(f"\n{len(users)} user(s) total.")

    print()
    if allowed:
        print("Allowed identities:")
        for identity in allowed:
            print(f"  {identity}")
    else:
        print("Allowed identities: (any authenticated user)")


def cmd_add(args: argparse.Namespace) -> None:
    """Add a new user."""
    config = load_config(args.config)
    if args.username in config["auth"]["users"]:
        print(f"Error: User '{args.username}' already exists.")
        print("Use 'passwd' to change their password, or 'remove' first.")
        sys.exit(1)

    print(f"Adding user '{args.username}'.")
    add_user(config, args.username, prompt_password())
    save_config(args.config, config)
    print(f"User '{args.username}' added successfully.")


def cmd_remove(args: argparse.Namespace) -> None:
    """Remove a user."""
    config = load_config(args.config)
    if args.username not in config["auth"]["users"]:
        print(f"Error: User '{args.username}' not found.")
        sys.exit(1)

    confirm = input(f"Remove user '{args.username}'? [y/N]: ").strip().lower()
    if confirm != "y":
        print("Cancelled.")
        return

    remove_user(config, args.username)
    save_config(args.config, config)
    print(f"User '{args.username}' removed.")


def cmd_passwd(args: argparse.Namespace) -> None:
    """Change a user's password."""
    config = load_config(args.config)
    if args.username not in config["auth"]["users"]:
        print(f"Error: User '{args.username}' not found.")
        sys.exit(1)

    print(f"Changing password for '{args.username}'.")
    set_password(config, args.username, prompt_password())
    save_config(args.config, config)
    print(f"Password updated for '{args.username}'.")


def cmd_allow(args: argparse.Namespace) -> None:
    config = load_config(args.config)
    if allow_identity(config, args.identity):
        save_config(args.config, config)
        print(f"'{args.identity}' added to the allowed list.")
    else:
        print(f"'{args.identity}' is already allowed.")


def cmd_disallow(args: argparse.Namespace) -> None:
    config = load_config(args.config)
    try:
        disallow_identity(config, args.identity)
    except UserError as e:
        print(f"Error: {e}")
        sys.exit(1)
    save_config(args.config, config)
    print(f"'{args.identity}' removed from the allowed list.")


# =========================================================================
# Main
# =========================================================================

def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        description="Manage terminal gateway users and allowed identities.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python3 edit_user.py add admin             Add an admin user\n"
            "  python3 edit_user.py list                   Show users and allow-list\n"
            "  python3 edit_user.py passwd admin           Change admin password\n"
            "  python3 edit_user.py allow alice@example.com\n"
        ),
    )
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH,
                        help=f"Config file to edit (default: {DEFAULT_CONFIG_PATH})")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sp_list = subparsers.add_parser("list", help="List users and allowed identities")
    sp_list.set_defaults(func=cmd_list)

    sp_add = subparsers.add_parser("add", help="Add a new user")
    sp_add.add_argument("username", help="Username to add")
    sp_add.set_defaults(func=cmd_add)

    sp_rm = subparsers.add_parser("remove", help="Remove a user")
    sp_rm.add_argument("username", help="Username to remove")
    sp_rm.set_defaults(func=cmd_remove)

    sp_pw = subparsers.add_parser("passwd", help="Change a user's password")
    sp_pw.add_argument("username", help="Username to update")
    sp_pw.set_defaults(func=cmd_passwd)

    sp_allow = subparsers.add_parser("allow", help="Allow an identity to connect")
    sp_allow.add_argument("identity", help="Username or email")
    sp_allow.set_defaults(func=cmd_allow)

    sp_disallow = subparsers.add_parser("disallow", help="Remove an identity from the allow-list")
    sp_disallow.add_argument("identity", help="Username or email")
    sp_disallow.set_defaults(func=cmd_disallow)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
