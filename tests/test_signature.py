import pytest

from wallet_ledger.exceptions import AuthenticationError, ConfigurationError
from wallet_ledger.signature import SignatureVerifier, compute_signature

BODY = b'{"id":"cg-1","status":"paid"}'


def test_valid_signature_is_accepted():
    verifier = SignatureVerifier("secret")
    verifier.verify(BODY, compute_signature("secret", BODY))
    verifier.verify(BODY, "sha256=" + compute_signature("secret", BODY))


def test_missing_signature_is_rejected():
    with pytest.raises(AuthenticationError):
        SignatureVerifier("secret").verify(BODY, None)


def test_signature_over_reserialized_body_is_rejected():
    reformatted = b'{"id": "cg-1", "status": "paid"}'
    with pytest.raises(AuthenticationError):
        SignatureVerifier("secret").verify(reformatted, compute_signature("secret", BODY))


def test_wrong_secret_is_rejected():
    with pytest.raises(AuthenticationError):
        SignatureVerifier("secret").verify(BODY, compute_signature("other", BODY))


def test_permissive_mode_outside_production(caplog):
    verifier = SignatureVerifier(None)
    assert verifier.permissive
    verifier.verify(BODY, None)
    assert "permissive mode" in caplog.text


def test_production_requires_secret():
    with pytest.raises(ConfigurationError):
        SignatureVerifier("", production=True)
