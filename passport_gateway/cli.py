"""
Passport Gateway Command Line Interface.

Provides commands for generating passport keys, signing the challenge,
managing the ledger and running the gateway.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from passport_gateway import config
from passport_gateway.errors import GatewayError
from passport_gateway.keys import generate_keypair, sign_challenge


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate a new Ed25519 passport keypair."""
    keypair = generate_keypair()

    if args.env:
        print(f"export PASSPORT_PRIVATE_KEY='{keypair.private_key_hex}'")
        print(f"export PASSPORT_PUBLIC_KEY='{keypair.public_key_hex}'")
    else:
        print("NEW PASSPORT KEY GENERATED\n")
        print("--- PRIVATE KEY (keep secret) ---")
        print(keypair.private_key_hex)
        print("\n--- PUBLIC KEY (passportPublicKey) ---")
        print(keypair.public_key_hex)
    return 0


def cmd_sign(args: argparse.Namespace) -> int:
    """Sign the gateway challenge."""
    private_key = args.key or os.environ.get('PASSPORT_PRIVATE_KEY')
    if not private_key:
        print("Error: Missing private key. Set PASSPORT_PRIVATE_KEY or use --key", file=sys.stderr)
        return 1

    try:
        signature = sign_challenge(private_key, args.challenge or config.CHALLENGE_MESSAGE)
    except ValueError as e:
        print(f"Error signing challenge: {e}", file=sys.stderr)
        return 1

    print(signature)
    return 0


async def _init_db(database_url: str) -> None:
    from passport_gateway.ledger import SQLLedger

    ledger = SQLLedger.from_url(database_url)
    try:
        await ledger.create_tables()
    finally:
        await ledger.dispose()


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the ledger tables."""
    try:
        asyncio.run(_init_db(args.database_url))
    except GatewayError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    print(f"Ledger tables ready at {config._redact_url(args.database_url)}")
    return 0


async def _lookup(database_url: str, public_key_hex: str):
    from passport_gateway.ledger import SQLLedger

    ledger = SQLLedger.from_url(database_url)
    try:
        return await ledger.get_passport(public_key_hex)
    finally:
        await ledger.dispose()


def cmd_passport(args: argparse.Namespace) -> int:
    """Show the passport bound to a public key."""
    try:
        snapshot = asyncio.run(_lookup(args.database_url, args.public_key))
    except GatewayError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if snapshot is None:
        if args.json:
            print(json.dumps({"found": False}))
        else:
            print("No passport for this key")
        return 1

    if args.json:
        result = dict(snapshot.to_frame_data(), canProceed=snapshot.can_proceed)
        print(json.dumps(result, indent=2))
    else:
        print(f"Passport: {snapshot.passport_id}")
        print(f"   Tier:   {snapshot.tier}")
        print(f"   Usage:  {snapshot.usage}")
        print(f"   Status: {snapshot.status}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the gateway with uvicorn."""
    import uvicorn

    uvicorn.run(
        "passport_gateway.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_level="debug" if args.verbose else "info",
    )
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Print the effective configuration."""
    config.print_config()
    return 0


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog='passport-gateway',
        description='Passport Gateway CLI - Ed25519 passports for a streaming generation backend'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # keygen command
    p_keygen = subparsers.add_parser('keygen', help='Generate a new passport keypair')
    p_keygen.add_argument('--env', action='store_true', help='Output as environment variables')

    # sign command
    p_sign = subparsers.add_parser('sign', help='Sign the gateway challenge')
    p_sign.add_argument('--key', help='Private key (hex)')
    p_sign.add_argument('--challenge', help='Challenge message (defaults to the configured one)')

    # init-db command
    p_init = subparsers.add_parser('init-db', help='Create the ledger tables')
    p_init.add_argument('--database-url', default=config.DATABASE_URL, help='SQLAlchemy async URL')

    # passport command
    p_passport = subparsers.add_parser('passport', help='Show the passport for a public key')
    p_passport.add_argument('public_key', help='Public key (hex)')
    p_passport.add_argument('--database-url', default=config.DATABASE_URL, help='SQLAlchemy async URL')
    p_passport.add_argument('--json', action='store_true', help='Output as JSON')

    # serve command
    p_serve = subparsers.add_parser('serve', help='Run the gateway')
    p_serve.add_argument('--host', default=config.HOST, help='Bind address')
    p_serve.add_argument('--port', type=int, default=config.PORT, help='Bind port')

    # config command
    subparsers.add_parser('config', help='Print the effective configuration')

    args = parser.parse_args()

    setup_logging(args.verbose if hasattr(args, 'verbose') else False)

    if args.command == 'keygen':
        return cmd_keygen(args)
    elif args.command == 'sign':
        return cmd_sign(args)
    elif args.command == 'init-db':
        return cmd_init_db(args)
    elif args.command == 'passport':
        return cmd_passport(args)
    elif args.command == 'serve':
        return cmd_serve(args)
    elif args.command == 'config':
        return cmd_config(args)
    else:
        parser.print_help()
        return 0


if __name__ == '__main__':
    sys.exit(main())
