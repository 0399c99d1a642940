import base64
import json

from backend.oauth_state import StatePayload, new_state, sign_state, verify_state

SECRET = "s3cret"
NOW = 1_700_000_000_000


def _payload(**kw):
    return StatePayload(**{"n": "abc123", "rt": "http://127.0.0.1:4200", "exp": NOW + 1000, **kw})


def test_sign_and_verify_round_trip():
    token = sign_state(_payload(), SECRET)

    verified = verify_state(token, SECRET, now_ms=NOW)

    assert verified is not None
    assert verified.n == "abc123"
    assert verified.rt == "http://127.0.0.1:4200"


def test_token_shape_is_body_dot_signature_without_padding():
    token = sign_state(_payload(), SECRET)

    body, sig = token.split(".")
    assert "=" not in token
    decoded = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    assert json.loads(decoded) == {"n": "abc123", "rt": "http://127.0.0.1:4200", "exp": NOW + 1000}


def test_return_to_is_optional():
    token = sign_state(_payload(rt=None), SECRET)

    verified = verify_state(token, SECRET, now_ms=NOW)

    assert verified is not None
    assert verified.rt is None


def test_wrong_secret_is_rejected():
    token = sign_state(_payload(), SECRET)

    assert verify_state(token, "other-secret", now_ms=NOW) is None


def test_tampered_body_is_rejected():
    token = sign_state(_payload(), SECRET)
    _, sig = token.split(".")
    forged = sign_state(_payload(rt="https://evil.example"), SECRET).split(".")[0]

    assert verify_state(f"{forged}.{sig}", SECRET, now_ms=NOW) is None


def test_expired_state_is_rejected():
    token = sign_state(_payload(exp=NOW - 1), SECRET)

    assert verify_state(token, SECRET, now_ms=NOW) is None


def test_state_valid_exactly_at_expiry():
    token = sign_state(_payload(exp=NOW), SECRET)

    assert verify_state(token, SECRET, now_ms=NOW) is not None


def test_malformed_tokens_are_rejected():
    for token in (None, "", "no-dot", ".sig", "body.", "a.b", "a.b.c", "é.ü"):
        assert verify_state(token, SECRET, now_ms=NOW) is None


def test_signed_garbage_body_is_rejected():
    from backend.oauth_state import _b64url, _sign

    body = _b64url(b"not json")
    assert verify_state(f"{body}.{_sign(body, SECRET)}", SECRET, now_ms=NOW) is None


def test_new_state_carries_return_to_and_ten_minute_expiry():
    token = new_state("http://localhost:4200/home", SECRET)

    verified = verify_state(token, SECRET)

    assert verified is not None
    assert verified.rt == "http://localhost:4200/home"
    assert len(verified.n) == 32
    assert verify_state(token, SECRET, now_ms=verified.exp + 1) is None
    assert verify_state(token, SECRET, now_ms=verified.exp - 10 * 60 * 1000 + 5000) is not None


def test_new_state_nonces_differ():
    assert new_state(None, SECRET) != new_state(None, SECRET)
