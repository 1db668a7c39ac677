"""eventchain.cli

Command line interface entry point for eventchain.

Design constraints:
- argparse-based.
- Lazy imports: the Kafka client is only loaded by commands that publish.
- Exit codes: 0 ok, 1 failed check or operation, 2 usage or config error.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from eventchain.core.exceptions import ConfigError, SigningUnavailable

if TYPE_CHECKING:
    from eventchain.core.config import Config


@dataclass(frozen=True)
class CliContext:
    repo_root: Path


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="eventchain",
        description="Tamper-evident, hash-linked event log per entity.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )

    sub = parser.add_subparsers(dest="command")

    p_keygen = sub.add_parser("keygen", help="Generate an Ed25519 signing key file")
    p_keygen.add_argument("--out", type=Path, required=True, help="Key file to write.")
    p_keygen.add_argument("--force", action="store_true", help="Overwrite an existing key file.")
    p_keygen.add_argument("--json", action="store_true", help="Machine-readable output.")

    p_verify = sub.add_parser("verify", help="Verify a chain exported as JSON lines")
    p_verify.add_argument("path", type=Path, help="One wire message per line, oldest first.")
    p_verify.add_argument("--public-key", required=True, help="Signer public key (hex, base64, or PEM file path).")
    p_verify.add_argument("--tip", default=None, help="Committed tip; walk back from it and ignore orphans.")
    p_verify.add_argument("--json", action="store_true", help="Machine-readable output.")

    p_record = sub.add_parser("record", help="Register a user, or update the email of an existing one")
    p_record.add_argument("--username", required=True)
    p_record.add_argument("--email", required=True)
    p_record.add_argument("--session-id", default=None)
    p_record.add_argument("--memory-broker", action="store_true", help="Publish to an in-process broker.")
    p_record.add_argument("--dump", type=Path, default=None, help="Append the published message to this file.")

    p_rec = sub.add_parser("reconcile", help="Replay outbox rows left pending by a crashed process")
    p_rec.add_argument("--memory-broker", action="store_true", help="Publish to an in-process broker.")

    sub.add_parser("status", help="Print configuration, store and outbox status")

    return parser


def _print_version() -> None:
    from eventchain import __version__

    print(f"eventchain v{__version__}")


def _load_config(ctx: CliContext) -> Config:
    from eventchain.core.config import Config
    from eventchain.core.logging import configure_logging

    cfg = Config.from_repo_defaults(ctx.repo_root)
    configure_logging(cfg.logging)
    return cfg


def _cmd_keygen(ctx: CliContext, args: argparse.Namespace) -> int:
    from eventchain.security.signer import Ed25519Signer

    out: Path = args.out
    if out.exists() and not args.force:
        print(f"error: {out} exists (use --force to overwrite)", file=sys.stderr)
        return 2

    signer = Ed25519Signer.generate()
    try:
        signer.save(out)
    except SigningUnavailable as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({"path": str(out), "public_key": signer.public_key_hex}, indent=2, sort_keys=True))
    else:
        print(f"wrote {out}")
        print(f"public key: {signer.public_key_hex}")
    return 0


def _read_public_key(value: str) -> str:
    p = Path(value)
    if p.is_file():
        return p.read_text(encoding="utf-8")
    return value


def _cmd_verify(ctx: CliContext, args: argparse.Namespace) -> int:
    from eventchain.core.exceptions import ChainIntegrityError
    from eventchain.ledger.verify import read_jsonl, verify_chain, walk_back

    try:
        messages = read_jsonl(args.path)
        if args.tip:
            messages = walk_back(args.tip, messages)
    except (OSError, ChainIntegrityError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    result = verify_chain(messages, _read_public_key(args.public_key), expected_tip=args.tip)

    if args.json:
        print(
            json.dumps(
                {
                    "valid": result.is_valid,
                    "verified": result.verified_count,
                    "first_break_at": result.first_break_at,
                    "tip": result.tip,
                    "errors": result.errors,
                },
                indent=2,
                sort_keys=True,
            )
        )
    else:
        mark = "valid" if result.is_valid else "BROKEN"
        print(f"{args.path}: {mark} ({result.verified_count}/{len(messages)} events)")
        print(f"- tip: {result.tip}")
        for err in result.errors:
            print(f"- {err}")
    return 0 if result.is_valid else 1


def _cmd_record(ctx: CliContext, args: argparse.Namespace) -> int:
    from eventchain.app import build_app
    from eventchain.core.exceptions import EntityNotFound, EventChainError

    cfg = _load_config(ctx)
    app = build_app(cfg, root=ctx.repo_root, in_memory_broker=bool(args.memory_broker))
    try:
        try:
            app.store.get_by_username(args.username)
            user, pending = app.users.update_email(args.username, args.email, session_id=args.session_id)
        except EntityNotFound:
            user, pending = app.users.register(args.username, args.email, session_id=args.session_id)

        try:
            outcome = pending.result(timeout=cfg.chain.publish_timeout_s * 2)
        except (EventChainError, TimeoutError) as e:
            print(f"user {user.id} saved; event not recorded: {type(e).__name__}: {e}", file=sys.stderr)
            return 1

        print(f"{pending.kind} {user.username} ({user.id})")
        print(f"- previous: {outcome.previous_hash}")
        print(f"- tip: {outcome.tip.hash} (seq {outcome.tip.sequence})")
        if args.dump is not None and pending.message is not None:
            args.dump.parent.mkdir(parents=True, exist_ok=True)
            with args.dump.open("a", encoding="utf-8") as fh:
                fh.write(pending.message.to_json() + "\n")
        return 0
    except EventChainError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        app.close()


def _cmd_reconcile(ctx: CliContext, args: argparse.Namespace) -> int:
    from eventchain.app import build_app

    cfg = _load_config(ctx)
    app = build_app(cfg, root=ctx.repo_root, in_memory_broker=bool(args.memory_broker))
    try:
        if app.outbox is None:
            print("outbox disabled (chain.outbox_enabled: false)")
            return 0
        pendings = app.outbox.reconcile(app.events)
        app.events.drain(cfg.chain.publish_timeout_s * 2)
        failed = 0
        for p in pendings:
            if not p.done():
                failed += 1
                print(f"- {p.identity}: unsettled")
            elif p.exception() is not None:
                failed += 1
                print(f"- {p.identity}: {p.exception()}")
        print(f"reconciled {len(pendings) - failed}/{len(pendings)}")
        return 0 if failed == 0 else 1
    finally:
        app.close()


def _cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    from eventchain.core.config import Config
    from eventchain.ledger.outbox import Outbox
    from eventchain.users.store import UserStore

    repo_root = ctx.repo_root
    cfg_path = repo_root / "config" / "default.yaml"
    try:
        cfg = Config.from_repo_defaults(repo_root)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    data_dir = cfg.store.data_dir if cfg.store.data_dir.is_absolute() else repo_root / cfg.store.data_dir
    db_path = data_dir / cfg.store.db_name
    outbox_path = data_dir / cfg.store.outbox_db_name

    if cfg.signing.private_key_hex:
        signing = "hex (env)"
    elif cfg.signing.key_path is not None:
        signing = f"{cfg.signing.key_path} ({'present' if cfg.signing.key_path.exists() else 'missing'})"
    else:
        signing = "ephemeral" if cfg.signing.allow_ephemeral else "missing"

    print("eventchain status")
    print(f"- config: {cfg_path}")
    print(f"- service: {cfg.service.service_id}")
    print(f"- kafka: {cfg.kafka.bootstrap_servers} topic={cfg.kafka.topic} acks={cfg.kafka.acks}")
    print(f"- signing key: {signing}")

    if db_path.exists():
        store = UserStore(db_path)
        try:
            print(f"- users: {db_path} ({store.count()} users)")
        finally:
            store.close()
    else:
        print(f"- users: {db_path} (missing)")

    if cfg.chain.outbox_enabled and outbox_path.exists():
        outbox = Outbox(outbox_path)
        try:
            counts = outbox.counts()
        finally:
            outbox.close()
        print("- outbox: " + " ".join(f"{k}={v}" for k, v in counts.items()))
    else:
        print(f"- outbox: {'disabled' if not cfg.chain.outbox_enabled else 'empty'}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=_repo_root_from_cwd())

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "keygen": _cmd_keygen,
        "verify": _cmd_verify,
        "record": _cmd_record,
        "reconcile": _cmd_reconcile,
        "status": _cmd_status,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    try:
        return int(fn(ctx, args))
    except (ConfigError, SigningUnavailable) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
