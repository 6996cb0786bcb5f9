#!/usr/bin/env python3
"""Create a client entry for the CLIENTS_FILE registry.

Usage:
    # Confidential client; a secret is generated when none is given:
    python scripts/register_client.py --client-id billing --redirect-uri https://billing.example/cb

    # Public SPA client using the code flow with PKCE:
    python scripts/register_client.py --client-id spa --public \
        --redirect-uri https://spa.example/callback --scope openid --scope profile

    # Append straight to an existing clients file:
    python scripts/register_client.py --client-id billing --redirect-uri ... --append clients.json

The generated secret is printed once; only its argon2 hash is stored.
"""
from __future__ import annotations

import argparse
import json
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def build_entry(args: argparse.Namespace) -> tuple[dict, str | None]:
    from contruum.service.registry import hash_client_secret
    from contruum.storage.common import client_from_dict, client_to_dict

    secret = None
    entry = {
        "client_id": args.client_id,
        "client_type": "public" if args.public else "confidential",
        "display_name": args.display_name,
        "redirect_uris": args.redirect_uri,
        "post_logout_redirect_uris": args.post_logout_redirect_uri,
        "grant_types": args.grant_type or ["authorization_code", "refresh_token"],
        "response_types": args.response_type or ["code"],
        "scopes": args.scope or ["openid", "profile", "email"],
        "consent_type": args.consent,
        "require_pkce": args.require_pkce or args.public,
    }
    if not args.public:
        secret = args.secret or secrets.token_urlsafe(32)
        entry["secret_hash"] = hash_client_secret(secret)
    # round-trip through the loader so invalid entries fail here, not at startup
    return client_to_dict(client_from_dict(entry)), secret


def main():
    parser = argparse.ArgumentParser(
        description="Create a client registration for Contruum",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--client-id", required=True, help="Client identifier")
    parser.add_argument("--display-name", default=None, help="Name shown on the consent page")
    parser.add_argument("--public", action="store_true", help="Register a public client (no secret)")
    parser.add_argument("--secret", default=None, help="Use this secret instead of generating one")
    parser.add_argument("--redirect-uri", action="append", default=[], help="Allowed redirect URI (repeatable)")
    parser.add_argument(
        "--post-logout-redirect-uri", action="append", default=[], help="Allowed post-logout URI (repeatable)"
    )
    parser.add_argument("--grant-type", action="append", help="Permitted grant type (repeatable)")
    parser.add_argument("--response-type", action="append", help="Permitted response type (repeatable)")
    parser.add_argument("--scope", action="append", help="Permitted scope (repeatable)")
    parser.add_argument("--consent", choices=["implicit", "explicit"], default="explicit")
    parser.add_argument("--require-pkce", action="store_true", help="Require PKCE for this client")
    parser.add_argument("--append", metavar="FILE", help="Append the entry to this clients file")

    args = parser.parse_args()

    if not args.redirect_uri:
        print("Error: at least one --redirect-uri is required")
        sys.exit(1)
    if args.public and args.secret:
        print("Error: public clients cannot have a secret")
        sys.exit(1)

    try:
        entry, secret = build_entry(args)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.append:
        path = Path(args.append)
        existing = json.loads(path.read_text()) if path.exists() else []
        if any(item.get("client_id") == entry["client_id"] for item in existing):
            print(f"Error: client {entry['client_id']} already exists in {path}")
            sys.exit(1)
        existing.append(entry)
        path.write_text(json.dumps(existing, indent=2) + "\n")
        print(f"Added client {entry['client_id']} to {path}")
    else:
        print(json.dumps(entry, indent=2))

    if secret:
        print(f"\nClient secret (store it now, it is not recoverable): {secret}", file=sys.stderr)


if __name__ == "__main__":
    main()
