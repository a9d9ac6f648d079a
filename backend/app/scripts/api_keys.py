from __future__ import annotations

import argparse
from collections.abc import Sequence

from backend.app.config import load_settings
from backend.app.repositories.api_key_repository import ApiKeyRepository
from backend.app.repositories.database import Database


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage per-user Stratly API keys.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser(
        "create",
        help="Create an API key for a user (creates the user profile if needed).",
    )
    create_parser.add_argument("--user-id", required=True, help="User id the key authenticates.")
    create_parser.add_argument(
        "--label",
        default="default",
        help="Human-readable label (for example: dashboard-prod).",
    )

    revoke_parser = subparsers.add_parser("revoke", help="Revoke an API key.")
    revoke_parser.add_argument("--key-id", required=True, help="Key id (skey_...).")

    list_parser = subparsers.add_parser("list", help="List API keys.")
    list_parser.add_argument("--user-id", default=None, help="Only keys for this user.")
    list_parser.add_argument("--all", action="store_true", help="Include revoked keys.")

    return parser.parse_args(argv)


def _print_key_list(
    repository: ApiKeyRepository,
    *,
    user_id: str | None,
    include_revoked: bool,
) -> None:
    keys = repository.list_keys(user_id=user_id, include_revoked=include_revoked)
    if not keys:
        print("No API keys found.")
        return

    print("key_id\tuser_id\tlabel\tcreated_at\trevoked_at\tlast_used_at")
    for key in keys:
        print(
            "\t".join(
                [
                    key.key_id,
                    key.user_id,
                    key.label,
                    key.created_at,
                    key.revoked_at or "-",
                    key.last_used_at or "-",
                ]
            )
        )


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = load_settings(validate_oauth_secrets=False)
    database = Database(settings.db_path)
    database.initialize()
    repository = ApiKeyRepository(database)

    if args.command == "create":
        record, token = repository.create_key(args.user_id, args.label)
        print(f"Created API key {record.key_id} for user {record.user_id} ({record.label})")
        print(f"Token (save now, only shown once): {token}")
        print(f"Authorization header: Bearer {token}")
        return

    if args.command == "revoke":
        if repository.revoke_key(args.key_id):
            print(f"Revoked API key: {args.key_id}")
        else:
            print(f"No active API key found for: {args.key_id}")
        return

    if args.command == "list":
        _print_key_list(repository, user_id=args.user_id, include_revoked=args.all)
        return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
