import hashlib
from typing import Dict

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature
from hypothesis import given, settings, strategies as st

from boomersig.engine import Outgoing
from boomersig.errors import EngineError
from boomersig.threshold import ORDER, ShamirEngine, lagrange_at_zero, poly_eval

DIGEST = bytes(31) + b"\x01"


def run_rounds(engine, states: Dict[int, object], tamper=None):
    """Drive every party in lock step, delivering each round's payloads directly."""
    outs = {i: engine.process_round(s, {}) for i, s in states.items()}
    round_number = 1
    while not all(done for _, done in outs.values()):
        inbox = {i: {} for i in states}
        for sender, (out, _) in outs.items():
            if out.broadcast is not None:
                for r in states:
                    if r != sender:
                        inbox[r][sender] = out.broadcast
            for r, payload in out.directed.items():
                inbox[r][sender] = payload
        if tamper is not None:
            tamper(round_number, inbox)
        outs = {i: engine.process_round(states[i], inbox[i]) for i in states}
        round_number += 1
    return states


def keygen(engine, n, t):
    return run_rounds(engine, {i: engine.new_keygen(i, n, t) for i in range(1, n + 1)})


def test_keygen_gives_every_party_the_same_public_key():
    engine = ShamirEngine()
    states = keygen(engine, 3, 2)
    keys = {engine.extract_key_share(s)[0] for s in states.values()}
    assert len(keys) == 1
    public_key = keys.pop()
    assert len(public_key) == 33 and public_key[0] in (2, 3)


def test_signature_is_identical_and_verifies():
    engine = ShamirEngine()
    states = keygen(engine, 3, 2)
    public_key, _ = engine.extract_key_share(states[1])

    signers = (1, 3)
    signing = run_rounds(engine, {i: engine.new_signing(states[i], DIGEST, signers) for i in signers})
    sigs = {engine.extract_signature(s) for s in signing.values()}
    assert len(sigs) == 1
    r, s = sigs.pop()
    assert s <= ORDER // 2

    pub = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
    pub.verify(encode_dss_signature(r, s), DIGEST, ec.ECDSA(Prehashed(hashes.SHA256())))


def test_restored_share_signs_like_the_live_state():
    engine = ShamirEngine()
    states = keygen(engine, 2, 2)
    restored = {}
    for i, s in states.items():
        _, local = engine.extract_key_share(s)
        restored[i] = engine.restore_keygen(local)
        assert restored[i].public_key == s.public_key

    digest = hashlib.sha256(b"restored").digest()
    a = run_rounds(engine, {i: engine.new_signing(states[i], digest, (1, 2)) for i in (1, 2)})
    b = run_rounds(engine, {i: engine.new_signing(restored[i], digest, (1, 2)) for i in (1, 2)})
    assert engine.extract_signature(a[1]) == engine.extract_signature(b[2])


def test_tampered_share_is_rejected():
    engine = ShamirEngine()
    states = {i: engine.new_keygen(i, 2, 2) for i in (1, 2)}

    def flip(round_number, inbox):
        if round_number == 2:
            sealed = bytearray(inbox[2][1])
            sealed[-1] ^= 0x01
            inbox[2][1] = bytes(sealed)

    with pytest.raises(EngineError):
        run_rounds(engine, states, tamper=flip)


def test_lost_directed_share_is_caught_by_confirmation_round():
    engine = ShamirEngine()
    states = {i: engine.new_keygen(i, 3, 2) for i in (1, 2, 3)}

    def drop_three_to_two(round_number, inbox):
        if round_number == 2:
            del inbox[2][3]

    # party 2 sums dealers {1, 2} while parties 1 and 3 sum {1, 2, 3}
    with pytest.raises(EngineError, match="different group key"):
        run_rounds(engine, states, tamper=drop_three_to_two)


def test_keygen_takes_a_confirmation_round():
    engine = ShamirEngine()
    state = engine.new_keygen(1, 2, 2)
    peer = engine.new_keygen(2, 2, 2)
    out1, _ = engine.process_round(state, {})
    out2, _ = engine.process_round(peer, {})
    out1, _ = engine.process_round(state, {2: out2.broadcast})
    out2, _ = engine.process_round(peer, {1: out1.broadcast})
    confirm1, done1 = engine.process_round(state, {2: out2.directed[1]})
    confirm2, done2 = engine.process_round(peer, {1: out1.directed[2]})
    assert not done1 and not done2
    assert confirm1.broadcast == confirm2.broadcast
    with pytest.raises(EngineError):
        engine.extract_key_share(state)
    _, done = engine.process_round(state, {2: confirm2.broadcast})
    assert done
    assert engine.extract_key_share(state)[0] == state.public_key


def test_signers_must_agree_on_digest():
    engine = ShamirEngine()
    states = keygen(engine, 2, 2)
    signing = {
        1: engine.new_signing(states[1], DIGEST, (1, 2)),
        2: engine.new_signing(states[2], hashlib.sha256(b"other").digest(), (1, 2)),
    }
    with pytest.raises(EngineError, match="different digest"):
        run_rounds(engine, signing)


def test_new_signing_checks_inputs():
    engine = ShamirEngine()
    states = keygen(engine, 3, 2)
    with pytest.raises(EngineError):
        engine.new_signing(states[1], bytes(31), (1, 2))
    with pytest.raises(EngineError):
        engine.new_signing(states[1], DIGEST, (1,))
    with pytest.raises(EngineError):
        engine.new_signing(states[1], DIGEST, (2, 3))
    with pytest.raises(EngineError):
        engine.new_signing(engine.new_keygen(1, 3, 2), DIGEST, (1, 2))


def test_unexpected_sender_and_garbage_payload():
    engine = ShamirEngine()
    state = engine.new_keygen(1, 2, 2)
    engine.process_round(state, {})
    with pytest.raises(EngineError):
        engine.process_round(state, {5: b"{}"})

    state = engine.new_keygen(1, 2, 2)
    engine.process_round(state, {})
    with pytest.raises(EngineError):
        engine.process_round(state, {2: b"not json"})


def test_keygen_below_threshold_fails():
    engine = ShamirEngine()
    state = engine.new_keygen(1, 3, 3)
    out, done = engine.process_round(state, {})
    assert isinstance(out, Outgoing) and out.broadcast is not None and not done
    # nobody else answered round 1, so nobody deals shares in round 2
    engine.process_round(state, {})
    with pytest.raises(EngineError, match="threshold"):
        engine.process_round(state, {})


def test_destroy_clears_secrets():
    engine = ShamirEngine()
    states = keygen(engine, 2, 2)
    engine.destroy(states[1])
    assert states[1].secret_share is None
    with pytest.raises(EngineError):
        engine.extract_key_share(states[1])


def test_restore_rejects_malformed_share():
    with pytest.raises(EngineError):
        ShamirEngine().restore_keygen(b'{"scheme": "feldman-secp256k1-v1"}')


@given(
    st.lists(st.integers(min_value=1, max_value=ORDER - 1), min_size=1, max_size=4),
    st.data(),
)
@settings(deadline=None, max_examples=50)
def test_any_threshold_subset_interpolates_the_secret(coefficients, data):
    t = len(coefficients)
    n = t + 2
    subset = sorted(data.draw(st.sets(st.integers(min_value=1, max_value=n), min_size=t, max_size=t)))
    shares = {i: poly_eval(coefficients, i) for i in subset}
    secret = sum(shares[i] * lagrange_at_zero(i, subset) for i in subset) % ORDER
    assert secret == coefficients[0]
