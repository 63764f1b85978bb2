import argparse
import hashlib
import json

import httpx
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature

from boomersig import cli
from boomersig.models import KeyShare, Phase, ProtocolKind, Session, SignatureResult
from boomersig.share_store import SecureShareStore
from boomersig.threshold import ORDER
from boomersig.transaction import PSBT_IN_NON_WITNESS_UTXO, Psbt, Transaction, TxIn, TxOut, p2pkh_address, p2pkh_script

from conftest import FAST_KDF, PASSPHRASE
from test_transaction import G_UNCOMPRESSED


def _args(**kwargs):
    defaults = {"config": None, "text": None, "digest": None}
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


def test_parser_commands():
    parser = cli.build_parser()
    args = parser.parse_args(["keygen", "--session", "k1", "-n", "3", "-t", "2", "-i", "1"])
    assert (args.command, args.participants, args.threshold, args.index) == ("keygen", 3, 2, 1)

    args = parser.parse_args(["sign", "--key-session", "k1", "--session", "s1", "--text", "hi", "--signers", "3,1"])
    assert args.signers == [1, 3]

    with pytest.raises(SystemExit):
        parser.parse_args(["sign", "--key-session", "k1", "--session", "s1"])
    with pytest.raises(SystemExit):
        parser.parse_args(["keygen", "--session", "k1", "--passphrase", "x", "-n", "2", "-t", "2", "-i", "1"])


def test_text_is_hashed_with_sha256():
    assert cli._digest_from_args(_args(text="hello")) == hashlib.sha256(b"hello").digest()
    assert cli._digest_from_args(_args(digest="00" * 31 + "01")) == bytes(31) + b"\x01"


def test_bad_digest_exits(capsys):
    with pytest.raises(SystemExit) as exc:
        cli._digest_from_args(_args(digest="abcd"))
    assert exc.value.code == 1
    assert capsys.readouterr().out.startswith("ERROR: Digest is not usable.")


def test_public_key_forms():
    from ecdsa import SECP256k1, SigningKey
    vk = SigningKey.generate(curve=SECP256k1).get_verifying_key()
    forms = cli._public_key_forms(vk.to_string("compressed"))
    assert forms["compressed"] == vk.to_string("compressed").hex()
    assert forms["uncompressed"] == vk.to_string("uncompressed").hex()


def test_shares_and_delete(tmp_path, capsys):
    shares = tmp_path / "shares"
    cli.main(["shares", "--shares-dir", str(shares)])
    assert "No key shares" in capsys.readouterr().out

    store = SecureShareStore(shares, FAST_KDF)
    store.seal_share(
        KeyShare("k1", 1, b"\x02" + bytes(32), 2, (1, 2), 0.0), b"share", PASSPHRASE
    )
    cli.main(["shares", "--shares-dir", str(shares)])
    assert "k1" in capsys.readouterr().out

    cli.main(["delete", "k1", "--shares-dir", str(shares), "--yes"])
    assert "erased" in capsys.readouterr().out
    assert not store.exists("k1")

    with pytest.raises(SystemExit):
        cli.main(["delete", "k1", "--shares-dir", str(shares), "--yes"])


def test_keygen_refuses_short_passphrase(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": "short")
    with pytest.raises(SystemExit):
        cli.main(["keygen", "--session", "k1", "-n", "2", "-t", "2", "-i", "1",
                  "--shares-dir", str(tmp_path)])
    assert "Passphrase rejected" in capsys.readouterr().out


def test_keygen_refuses_existing_share(tmp_path, capsys):
    store = SecureShareStore(tmp_path, FAST_KDF)
    store.seal_share(KeyShare("k1", 1, b"\x02" + bytes(32), 2, (1, 2), 0.0), b"s", PASSPHRASE)
    with pytest.raises(SystemExit):
        cli.main(["keygen", "--session", "k1", "-n", "2", "-t", "2", "-i", "1", "--shares-dir", str(tmp_path)])
    assert "already exists" in capsys.readouterr().out


def test_status_reports_relay_summary(tmp_path, monkeypatch, capsys):
    def fake_get(url, timeout):
        assert url == "http://relay.test/session/k1"
        return httpx.Response(200, json={"session": "k1", "messages": 4})

    monkeypatch.setattr(cli.httpx, "get", fake_get)
    cli.main(["status", "k1", "--relay-url", "http://relay.test", "--shares-dir", str(tmp_path)])
    out = json.loads(capsys.readouterr().out)
    assert out == {"session": "k1", "local_share": False, "relay": {"session": "k1", "messages": 4}}


def test_config_file_errors_are_reported(tmp_path, capsys):
    bad = tmp_path / "bad.json"
    bad.write_text('{"passphrase": "nope"}')
    with pytest.raises(SystemExit):
        cli.main(["--config", str(bad), "shares"])
    assert "Configuration could not be loaded" in capsys.readouterr().out


def _completed_signing(public_key, signature):
    session = Session.create("s1", ProtocolKind.SIGN, [1, 2], 2, 1, key_session_id="k1")
    session.phase = Phase.COMPLETE
    session.public_key = public_key
    session.digest = signature.digest
    session.signature = signature
    return session


def test_keygen_report_includes_signet_address(capsys):
    session = Session.create("k1", ProtocolKind.KEYGEN, [1, 2], 2, 1)
    session.phase = Phase.COMPLETE
    session.public_key = G_UNCOMPRESSED
    cli._report(session, "signet")
    out = json.loads(capsys.readouterr().out)
    assert out["address"] == {"network": "signet", "p2pkh": p2pkh_address(G_UNCOMPRESSED, "signet")}
    assert "transaction" not in out


def test_sign_psbt_prints_finalized_transaction(tmp_path, monkeypatch, capsys):
    private = ec.derive_private_key(1, ec.SECP256K1())
    prev = Transaction(1, (TxIn(bytes(32), 0xFFFFFFFF, b"\x51"),), (TxOut(50_000, p2pkh_script(G_UNCOMPRESSED)),))
    psbt = Psbt.create(Transaction(2, (TxIn(prev.hash(), 0),), (TxOut(40_000, b"\x6a"),)))
    psbt.set_input(0, PSBT_IN_NON_WITNESS_UTXO, prev.serialize())
    psbt_file = tmp_path / "spend.psbt"
    psbt_file.write_text(psbt.to_base64())
    seen = {}

    class Recorder:
        async def start_signing(self, key_id, digest, signers=None, session_id=None):
            seen.update(key_id=key_id, digest=digest)

    async def fake_run_session(config, passphrase, start):
        await start(Recorder())
        r, s = decode_dss_signature(private.sign(seen["digest"], ec.ECDSA(Prehashed(hashes.SHA256()))))
        signature = SignatureResult(r=r, s=min(s, ORDER - s), public_key=G_UNCOMPRESSED, digest=seen["digest"])
        return _completed_signing(G_UNCOMPRESSED, signature)

    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": PASSPHRASE)
    monkeypatch.setattr(cli, "_run_session", fake_run_session)
    cli.main(["sign", "--key-session", "k1", "--session", "s1", "--psbt", f"@{psbt_file}",
              "--network", "mainnet", "--shares-dir", str(tmp_path)])

    out = json.loads(capsys.readouterr().out)
    assert seen["digest"] == psbt.sighash(0)
    assert out["address"]["p2pkh"] == "1EHNa6Q4Jz2uvNExL497mE43ikXhwF6kZm"
    signed = Transaction.parse(bytes.fromhex(out["transaction"]["hex"]))
    assert signed.txid() == out["transaction"]["txid"]
    assert signed.inputs[0].script_sig.endswith(b"\x41" + G_UNCOMPRESSED)


def test_sign_rejects_psbt_it_cannot_sign(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": pytest.fail("asked for a passphrase"))
    with pytest.raises(SystemExit) as exc:
        cli.main(["sign", "--key-session", "k1", "--session", "s1", "--psbt", "cHNidP8=",
                  "--shares-dir", str(tmp_path)])
    assert exc.value.code == 1
    assert "BOOMERSIG_E500" in capsys.readouterr().out


def test_psbt_excludes_other_inputs():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(
            ["sign", "--key-session", "k1", "--session", "s1", "--text", "x", "--psbt", "cHNidP8="]
        )
