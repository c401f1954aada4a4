#!/usr/bin/env python3
"""
Gruff auth -- operator command line.

Usage:
  python main.py hash-password                 (prompts for the password)
  python main.py verify-password --hash 'salt:key'
  python main.py decode-token <token>          (UNSAFE: no signature check)
  python main.py check-token <token> [--refresh]
  python main.py cleanup-session <user_id>

Environment variables:
  JWT_SECRET   Required by check-token (same value the API signs with).
  KV_URL       Session store backend used by cleanup-session.
"""

import argparse
import getpass
import json
import sys
from dataclasses import asdict

from auth.hashing import hash_password, verify_password
from auth.sessions import SessionStore
from auth.tokens import check_access_token, check_refresh_token, decode_token
from core.config import get_settings
from kv.store import open_kv


def _read_password(prompt: str = "Password: ") -> str:
    """Read a password from stdin when piped, otherwise prompt without echo."""
    if not sys.stdin.isatty():
        return sys.stdin.readline().rstrip("\n")
    return getpass.getpass(prompt)


def cmd_hash_password(args: argparse.Namespace) -> int:
    print(hash_password(_read_password()))
    return 0


def cmd_verify_password(args: argparse.Namespace) -> int:
    ok = verify_password(_read_password(), args.hash)
    print("match" if ok else "no match")
    return 0 if ok else 1


def cmd_decode_token(args: argparse.Namespace) -> int:
    claims = decode_token(args.token)
    if claims is None:
        print("  [!] Not a decodable token.", file=sys.stderr)
        return 1
    print("  [!] Signature and expiry NOT verified.", file=sys.stderr)
    print(json.dumps(asdict(claims), indent=2))
    return 0


def cmd_check_token(args: argparse.Namespace) -> int:
    secret = get_settings().jwt_secret
    check = check_refresh_token if args.refresh else check_access_token
    result = check(args.token, secret)
    if result.claims is None:
        print(f"invalid: {result.failure.value}")
        return 1
    print(json.dumps(asdict(result.claims), indent=2))
    return 0


def cmd_cleanup_session(args: argparse.Namespace) -> int:
    settings = get_settings()
    kv = open_kv(settings.kv_url)
    try:
        purged = SessionStore.from_settings(kv, settings).cleanup_expired(args.user_id)
    finally:
        kv.close()
    print(f"{purged} session(s) purged.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gruff-auth",
        description="Operator tools for Gruff tokens, password hashes, and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  echo 'Sup3rSecret!' | python main.py hash-password
  python main.py decode-token eyJhbGciOi...
  JWT_SECRET=... python main.py check-token eyJhbGciOi... --refresh
  KV_URL=redis://localhost:6379/0 python main.py cleanup-session 3f2a...
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("hash-password", help="Hash a password read from stdin or a prompt")
    p.set_defaults(func=cmd_hash_password)

    p = sub.add_parser("verify-password", help="Check a password against a stored hash")
    p.add_argument("--hash", required=True, metavar="SALT:KEY", help="Stored hash to verify against")
    p.set_defaults(func=cmd_verify_password)

    p = sub.add_parser("decode-token", help="Print token claims without verifying (debugging only)")
    p.add_argument("token")
    p.set_defaults(func=cmd_decode_token)

    p = sub.add_parser("check-token", help="Verify a token with JWT_SECRET and print the outcome")
    p.add_argument("token")
    p.add_argument("--refresh", action="store_true", help="Verify as a refresh token instead of an access token")
    p.set_defaults(func=cmd_check_token)

    p = sub.add_parser("cleanup-session", help="Purge a user's session if it is expired or corrupt")
    p.add_argument("user_id")
    p.set_defaults(func=cmd_cleanup_session)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
