"""
cli.py — boomersig operator CLI

Commands:
  relay     Run the HTTP message relay
  keygen    Take part in a T-of-N distributed key generation
  sign      Take part in a threshold signing session (digest, text or PSBT)
  status    Show relay and local state for a session
  shares    List key shares stored on this machine
  delete    Securely erase a stored key share

Passphrases are read interactively with getpass; there is no flag or
environment variable for them.
"""

from __future__ import annotations
import argparse
import asyncio
import getpass
import hashlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from . import __version__
from .config import BoomerSigConfig
from .errors import BoomerSigError
from .models import DIGEST_SIZE, Phase, Session
from .orchestrator import SessionManager
from .relay_client import RelayClient
from .secure_memory import SecretBuffer
from .share_store import SecureShareStore
from .threshold import ShamirEngine
from .transaction import NETWORKS, Psbt, Transaction, p2pkh_address

logger = logging.getLogger(__name__)

MIN_PASSPHRASE = 8


def _fail_with_error(err: BoomerSigError) -> None:
    """Print a structured error from a ``BoomerSigError`` and exit."""
    context = f" Context: {err.context}." if err.context else ""
    print(f"ERROR: {err.code}. {err.message}{context} Fix: check the session parameters and retry.")
    sys.exit(1)


def _cli_error(what: str, why: str, fix: str) -> None:
    """Print a teaching-style CLI error and exit."""
    print(f"ERROR: {what}. {why}. Fix: {fix}.")
    sys.exit(1)


def _load_config(args: argparse.Namespace) -> BoomerSigConfig:
    try:
        config = BoomerSigConfig.load(Path(args.config) if args.config else None)
    except (OSError, ValueError, TypeError) as exc:
        _cli_error(
            "Configuration could not be loaded",
            str(exc),
            "pass a JSON file with orchestrator/relay_client/relay_service/store sections",
        )
    if getattr(args, "relay_url", None):
        config.relay_client.base_url = args.relay_url
    if getattr(args, "shares_dir", None):
        config.store.shares_dir = args.shares_dir
    if getattr(args, "timeout", None):
        config.orchestrator.round_timeout = args.timeout
    return config


def _read_passphrase(confirm: bool) -> SecretBuffer:
    first = getpass.getpass("Share passphrase: ")
    if len(first) < MIN_PASSPHRASE:
        _cli_error(
            "Passphrase rejected",
            f"it is shorter than {MIN_PASSPHRASE} characters",
            "choose a longer passphrase",
        )
    if confirm and getpass.getpass("Repeat passphrase: ") != first:
        _cli_error("Passphrase rejected", "the two entries differ", "run the command again")
    return SecretBuffer.from_text(first)


def _parse_indices(text: str) -> List[int]:
    try:
        return sorted({int(part) for part in text.split(",") if part.strip()})
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma-separated indices, got {text!r}") from None


def _digest_from_args(args: argparse.Namespace) -> bytes:
    if args.text is not None:
        return hashlib.sha256(args.text.encode("utf-8")).digest()
    try:
        digest = bytes.fromhex(args.digest)
    except ValueError:
        digest = b""
    if len(digest) != DIGEST_SIZE:
        _cli_error(
            "Digest is not usable",
            f"expected {DIGEST_SIZE} bytes as {DIGEST_SIZE * 2} hex characters",
            "pass --digest <64 hex chars> or --text <message> to hash with SHA-256",
        )
    return digest


def _read_psbt(value: str) -> str:
    if not value.startswith("@"):
        return value
    path = Path(value[1:])
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        _cli_error(
            "PSBT file could not be read",
            f"{path}: {exc.strerror}",
            "pass a readable file or the base64 text itself",
        )


def _public_key_forms(public_key: bytes) -> Dict[str, str]:
    point = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
    return {
        "compressed": point.public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
        ).hex(),
        "uncompressed": point.public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
        ).hex(),
    }


def _check_complete(session: Session) -> None:
    if session.phase is not Phase.COMPLETE:
        failure = session.failure
        reason = failure.reason.value if failure else session.phase.value
        detail = failure.detail if failure else "session did not finish"
        fix = "check that every participant is online and using the same session parameters"
        if failure and failure.unresponsive:
            fix = f"bring participant(s) {', '.join(map(str, failure.unresponsive))} online and start a new session"
        _cli_error(f"Session {session.session_id} failed ({reason})", detail, fix)


def _report(session: Session, network: str, transaction: Optional[Transaction] = None) -> None:
    out: Dict[str, Any] = {"session": session.session_id, "kind": session.kind.value}
    if session.public_key:
        out["public_key"] = _public_key_forms(session.public_key)
        out["address"] = {"network": network, "p2pkh": p2pkh_address(session.public_key, network)}
    if session.signature is not None:
        sig = session.signature.to_dict()
        out["signature"] = {"r": sig["r"], "s": sig["s"], "der": sig["der"]}
        out["digest"] = sig["digest"]
    if transaction is not None:
        out["transaction"] = {"txid": transaction.txid(), "hex": transaction.serialize().hex()}
    out["participants"] = {str(i): p.status.value for i, p in session.participants.items()}
    print(json.dumps(out, indent=2))


async def _run_session(config: BoomerSigConfig, passphrase: SecretBuffer, start) -> Session:
    relay = RelayClient.from_config(config.relay_client)
    manager = SessionManager(
        ShamirEngine(),
        relay,
        SecureShareStore.from_config(config.store),
        config=config.orchestrator,
        passphrase_provider=lambda session_id, purpose: SecretBuffer(passphrase.value),
    )
    try:
        session = await start(manager)
        print(f"Session {session.session_id}: party {session.my_index} of {session.indices}, waiting for peers...")
        return await manager.wait(session.session_id)
    finally:
        await manager.close()
        await relay.aclose()


def cmd_relay(args: argparse.Namespace) -> None:
    from .relay_server import serve
    config = _load_config(args)
    if args.host:
        config.relay_service.host = args.host
    if args.port:
        config.relay_service.port = args.port
    if args.retention_ttl is not None:
        config.relay_service.retention_ttl = args.retention_ttl if args.retention_ttl > 0 else None
    serve(config.relay_service, debug=args.debug)


def cmd_keygen(args: argparse.Namespace) -> None:
    """Handle ``boomersig keygen``."""
    config = _load_config(args)
    store = SecureShareStore.from_config(config.store)
    if store.exists(args.session):
        _cli_error(
            f"Key share for session {args.session} already exists",
            f"{store.path_for(args.session)} would be overwritten",
            "pick a new session id or delete the old share with `boomersig delete`",
        )
    with _read_passphrase(confirm=True) as passphrase:
        session = asyncio.run(_run_session(
            config,
            passphrase,
            lambda m: m.start_keygen(args.participants, args.threshold, args.index, session_id=args.session),
        ))
    _check_complete(session)
    _report(session, args.network)
    print(f"Key share written to {store.path_for(session.session_id)}")


def cmd_sign(args: argparse.Namespace) -> None:
    """Handle ``boomersig sign``: sign a digest, SHA-256 of ``--text``, or a PSBT input."""
    config = _load_config(args)
    psbt = Psbt.from_base64(_read_psbt(args.psbt)) if args.psbt else None
    digest = psbt.sighash(args.input) if psbt is not None else _digest_from_args(args)
    with _read_passphrase(confirm=False) as passphrase:
        session = asyncio.run(_run_session(
            config,
            passphrase,
            lambda m: m.start_signing(args.key_session, digest, signers=args.signers, session_id=args.session),
        ))
    _check_complete(session)
    transaction = None
    if psbt is not None:
        transaction = psbt.finalize_p2pkh(args.input, session.signature)
        pending = psbt.unsigned_inputs()
        if pending:
            logger.warning("inputs %s of the transaction still need signatures", pending)
    _report(session, args.network, transaction)


def cmd_status(args: argparse.Namespace) -> None:
    config = _load_config(args)
    store = SecureShareStore.from_config(config.store)
    base = config.relay_client.base_url.rstrip("/")
    out: Dict[str, Any] = {"session": args.session, "local_share": store.exists(args.session)}
    try:
        resp = httpx.get(f"{base}/session/{args.session}", timeout=config.relay_client.request_timeout)
    except httpx.HTTPError as exc:
        _cli_error(
            "Relay is unreachable",
            f"{base}: {exc.__class__.__name__}",
            "start it with `boomersig relay` or pass --relay-url",
        )
    out["relay"] = resp.json() if resp.status_code == 200 else None
    print(json.dumps(out, indent=2))


def cmd_shares(args: argparse.Namespace) -> None:
    store = SecureShareStore.from_config(_load_config(args).store)
    sessions = store.list_sessions()
    if not sessions:
        print(f"No key shares in {store.shares_dir}")
        return
    for sid in sessions:
        print(f"{sid}\t{store.path_for(sid)}")


def cmd_delete(args: argparse.Namespace) -> None:
    store = SecureShareStore.from_config(_load_config(args).store)
    if not store.exists(args.session):
        _cli_error(
            f"No key share for session {args.session}",
            f"nothing at {store.path_for(args.session)}",
            "list stored shares with `boomersig shares`",
        )
    if not args.yes:
        answer = input(f"Erase key share {args.session}? This cannot be undone [y/N]: ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return
    store.delete(args.session)
    print(f"Key share {args.session} erased.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="boomersig", description="Threshold ECDSA over a message relay")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for INFO, -vv for DEBUG")
    sub = parser.add_subparsers(dest="command", required=True)

    # relay
    p_relay = sub.add_parser("relay", help="Run the message relay")
    p_relay.add_argument("--host")
    p_relay.add_argument("--port", type=int)
    p_relay.add_argument("--retention-ttl", type=float, help="Seconds to keep idle sessions (0 keeps them forever)")
    p_relay.add_argument("--debug", action="store_true")

    def session_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("--relay-url", help="Relay base URL")
        p.add_argument("--shares-dir", help="Directory for encrypted key shares")
        p.add_argument("--timeout", type=float, help="Per-round timeout in seconds")

    # keygen
    p_kg = sub.add_parser("keygen", help="Run distributed key generation")
    p_kg.add_argument("--session", required=True, help="Session id shared by all participants")
    p_kg.add_argument("-n", "--participants", type=int, required=True)
    p_kg.add_argument("-t", "--threshold", type=int, required=True)
    p_kg.add_argument("-i", "--index", type=int, required=True, help="This party's index (1..N)")
    session_options(p_kg)
    p_kg.add_argument("--network", choices=sorted(NETWORKS), default="signet", help="Network for the P2PKH address")

    # sign
    p_sign = sub.add_parser("sign", help="Run threshold signing")
    p_sign.add_argument("--key-session", required=True, help="Session id of the key generation")
    p_sign.add_argument("--session", required=True, help="Signing session id shared by all signers")
    what = p_sign.add_mutually_exclusive_group(required=True)
    what.add_argument("--digest", help="32-byte digest as hex")
    what.add_argument("--text", help="UTF-8 text, hashed with SHA-256")
    what.add_argument("--psbt", help="Base64 PSBT, or @file holding one; signs and finalizes one P2PKH input")
    p_sign.add_argument("--input", type=int, default=0, help="PSBT input index to sign (default 0)")
    p_sign.add_argument("--signers", type=_parse_indices, help="Comma-separated signer indices")
    session_options(p_sign)
    p_sign.add_argument("--network", choices=sorted(NETWORKS), default="signet", help="Network for the P2PKH address")

    # status
    p_status = sub.add_parser("status", help="Show session state")
    p_status.add_argument("session")
    session_options(p_status)

    # shares
    p_shares = sub.add_parser("shares", help="List stored key shares")
    p_shares.add_argument("--shares-dir")

    # delete
    p_del = sub.add_parser("delete", help="Securely erase a key share")
    p_del.add_argument("session")
    p_del.add_argument("--shares-dir")
    p_del.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    return parser


COMMANDS = {
    "relay": cmd_relay,
    "keygen": cmd_keygen,
    "sign": cmd_sign,
    "status": cmd_status,
    "shares": cmd_shares,
    "delete": cmd_delete,
}


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        COMMANDS[args.command](args)
    except BoomerSigError as err:
        _fail_with_error(err)
    except ValueError as exc:
        _cli_error("Invalid request", str(exc), "check the command arguments and retry")
    except KeyboardInterrupt:
        print("Interrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
