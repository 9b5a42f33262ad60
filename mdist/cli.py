"""
mdist CLI: build and check Merkle distribution artifacts.

Commands:
  mdist build   - Build claims.json (root, total, per-account proofs) from balances
  mdist proof   - Show one account's index, amount and proof
  mdist verify  - Re-verify one or all claims in an artifact against its root
  mdist status  - Show which claims a persisted registry has redeemed
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path


def _setup_logging(args: argparse.Namespace, config: dict) -> None:
    level = logging.DEBUG if args.verbose else getattr(
        logging, str(config.get("log_level", "WARNING")).upper(), logging.WARNING
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _load_distribution(path_str: str):
    """Read a claims artifact or exit with an error."""
    from mdist.balance_map import Distribution

    path = Path(path_str)
    if not path.is_file():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)
    try:
        return Distribution.from_json(path.read_text(encoding="utf-8"))
    except ValueError as e:
        print(f"Error: Invalid claims file {path}: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_build(args: argparse.Namespace, config: dict) -> None:
    """Build a distribution artifact from a balances JSON file."""
    from mdist.balance_map import parse_balance_map

    path = Path(args.balances)
    if not path.is_file():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)
    try:
        balances = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in {path}: {e}", file=sys.stderr)
        sys.exit(1)

    sort = args.sort or bool(config.get("sort_addresses", False))
    try:
        dist = parse_balance_map(balances, sort=sort)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        out_path = Path(args.output)
        if ".." in out_path.parts:
            print("Error: Output path must not contain '..' (path traversal)", file=sys.stderr)
            sys.exit(1)
        out_path.write_text(dist.to_json() + "\n", encoding="utf-8")
        print(f"Distribution written -> {out_path}")
    else:
        print(dist.to_json())

    # Keep stdout pure JSON when the artifact goes there
    summary = sys.stdout if args.output else sys.stderr
    print(f"  root:   {dist.merkle_root}", file=summary)
    print(f"  total:  {dist.token_total}", file=summary)
    print(f"  claims: {len(dist.claims)}", file=summary)


def cmd_proof(args: argparse.Namespace, config: dict) -> None:
    """Show the claim for one account."""
    dist = _load_distribution(args.claims)
    try:
        claim = dist.claim_for(args.address)
    except (KeyError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Claim for {args.address}:")
    print(f"  index:  {claim.index}")
    print(f"  amount: {claim.amount}")
    print(f"  proof:  ({len(claim.proof)} siblings)")
    for sibling in claim.proof:
        print(f"    {sibling}")


def cmd_verify(args: argparse.Namespace, config: dict) -> None:
    """Verify claims in an artifact against its own root."""
    from mdist.merkle import BalanceTree

    dist = _load_distribution(args.claims)
    if args.address:
        try:
            targets = {args.address: dist.claim_for(args.address)}
        except (KeyError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        targets = dict(dist.claims)

    failed = [
        account
        for account, claim in targets.items()
        if not BalanceTree.verify_proof(
            claim.index, account, claim.amount, claim.proof, dist.merkle_root
        )
    ]

    if not args.address:
        total = sum(c.amount for c in dist.claims.values())
        if total != dist.token_total:
            print(
                f"FAIL: tokenTotal {dist.token_total} != sum of claims {total}",
                file=sys.stderr,
            )
            sys.exit(1)

    if failed:
        for account in failed:
            print(f"FAIL: {account} proof does not match root", file=sys.stderr)
        sys.exit(1)
    print(f"OK: {len(targets)} claim(s) verified against {dist.merkle_root}")


def cmd_status(args: argparse.Namespace, config: dict) -> None:
    """Show claimed/unclaimed accounts for a persisted registry."""
    from mdist.bitmap import ClaimBitmap
    from mdist.config import data_dir
    from mdist.store import ClaimStore, ClaimStoreError

    dist = _load_distribution(args.claims)
    store_path = (
        Path(args.store) if args.store
        else data_dir(config) / f"{dist.merkle_root[2:18]}.json"
    )
    store = ClaimStore(store_path)
    try:
        data = store.load()
        if data is not None and data["merkle_root"] != dist.merkle_root:
            raise ClaimStoreError(
                f"{store_path} belongs to root {data['merkle_root']}"
            )
        bitmap = ClaimBitmap(store.load_words())
    except ClaimStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    claimed = 0
    print(f"Distribution {dist.merkle_root}")
    for account, claim in sorted(dist.claims.items(), key=lambda kv: kv[1].index):
        done = bitmap.is_set(claim.index)
        claimed += done
        mark = "claimed" if done else "open"
        print(f"  #{claim.index:<6} {account}  {claim.amount:>24}  {mark}")
    print(f"{claimed}/{len(dist.claims)} claimed")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="mdist",
        description="Merkle distributor: build and check claim artifacts.",
    )
    from mdist import __version__
    parser.add_argument("--version", action="version", version=f"mdist {__version__}")
    parser.add_argument("--config", help="Path to config.toml (default ~/.mdist/config.toml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p_build = sub.add_parser("build", help="Build claims artifact from balances JSON")
    p_build.add_argument("balances", help="JSON mapping {address: amount} or record list")
    p_build.add_argument("-o", "--output", help="Write artifact here instead of stdout")
    p_build.add_argument("--sort", action="store_true", help="Index accounts by address order")

    p_proof = sub.add_parser("proof", help="Show one account's claim")
    p_proof.add_argument("claims", help="Path to claims artifact")
    p_proof.add_argument("address", help="Account address")

    p_verify = sub.add_parser("verify", help="Verify claims against the artifact root")
    p_verify.add_argument("claims", help="Path to claims artifact")
    p_verify.add_argument("address", nargs="?", help="Only verify this account")

    p_status = sub.add_parser("status", help="Show redeemed claims of a registry")
    p_status.add_argument("claims", help="Path to claims artifact")
    p_status.add_argument("--store", help="Path to the registry's claim store")

    args = parser.parse_args(argv)

    if not args.command:
        print("mdist: Merkle distributor tooling")
        print()
        print("Usage:")
        print("  mdist build balances.json -o claims.json [--sort]")
        print("  mdist proof claims.json <address>")
        print("  mdist verify claims.json [address]")
        print("  mdist status claims.json [--store state.json]")
        print()
        print("Run 'mdist <command> --help' for details on any command.")
        sys.exit(0)

    from mdist.config import load_config
    config = load_config(Path(args.config) if args.config else None)
    _setup_logging(args, config)

    commands = {
        "build": cmd_build,
        "proof": cmd_proof,
        "verify": cmd_verify,
        "status": cmd_status,
    }
    commands[args.command](args, config)


if __name__ == "__main__":
    main()
