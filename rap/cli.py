#!/usr/bin/env python3
"""
rap CLI

Helper commands around a rap-server deployment:
  rap keygen <path> - Generate the signing key pair
  rap actor <id>    - Fetch and show a remote actor

Usage:
  rap keygen /var/lib/rap/main-key.pem
  rap actor https://mastodon.example/users/alice [--signed --config config.yaml]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from .actor import LocalActor
from .config import load_config
from .errors import KeyMaterialError, ResolutionError, TransportError
from .keys import KeyManager, generate_keypair, write_private_key
from .resolver import PeerResolver
from .transport import HttpTransport


def cmd_keygen(args):
    """Generate a key pair and print the public key."""
    path = Path(args.path)
    if path.exists() and not args.force:
        print(f"Error: {path} already exists (use --force to overwrite)", file=sys.stderr)
        sys.exit(1)

    private_pem, public_pem = generate_keypair()
    write_private_key(path, private_pem)
    print(f"Private key written to: {path}")
    print(public_pem.decode("utf-8"), end="")


def cmd_actor(args):
    """Resolve a remote actor and print what the server would cache."""
    keys = None
    if args.signed:
        config = load_config(args.config)
        local = LocalActor(config.domain, config.username)
        try:
            keys = KeyManager.load(config.key_path, local.key_id)
        except KeyMaterialError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    transport = HttpTransport(timeout=args.timeout, keys=keys)
    if args.raw:
        try:
            document = transport.fetch_json(args.id)
        except (TransportError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        print(json.dumps(document, indent=2))
        return

    resolver = PeerResolver(transport.fetch_json)
    try:
        actor = resolver.resolve(args.id)
    except ResolutionError as e:
        kind = "permanent" if e.permanent else "transient"
        print(f"Error ({kind}): {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Actor:        {actor.id}")
    print(f"Inbox:        {actor.inbox}")
    if actor.shared_inbox:
        print(f"Shared inbox: {actor.shared_inbox}")
    print(f"Key ID:       {actor.key_id}")
    print(actor.public_key_pem.rstrip())


def main():
    parser = argparse.ArgumentParser(
        prog="rap",
        description="rap federation tools",
    )
    parser.add_argument("--debug", "-d", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    keygen_parser = subparsers.add_parser("keygen", help="Generate a signing key pair")
    keygen_parser.add_argument("path", help="Where to write the private key PEM")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite an existing key")
    keygen_parser.set_defaults(func=cmd_keygen)

    actor_parser = subparsers.add_parser("actor", help="Fetch a remote actor")
    actor_parser.add_argument("id", help="Actor ID (URL)")
    actor_parser.add_argument("--raw", action="store_true", help="Print the raw actor document")
    actor_parser.add_argument("--signed", action="store_true", help="Sign the fetch with the server key")
    actor_parser.add_argument("--config", "-c", help="Config file (for --signed)")
    actor_parser.add_argument("--timeout", type=float, default=10.0, help="Request timeout in seconds")
    actor_parser.set_defaults(func=cmd_actor)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    args.func(args)


if __name__ == "__main__":
    main()
