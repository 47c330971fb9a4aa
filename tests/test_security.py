import pytest
from cryptography.fernet import Fernet
from werkzeug.security import generate_password_hash

from security import (
    build_cipher,
    decrypt_sensitive_value,
    encrypt_sensitive_value,
    hash_password,
    load_sensitive_key,
    validate_password,
    verify_password,
)


def test_hash_and_verify():
    hashed = hash_password("noodles42", rounds=4)

    assert hashed.startswith("$2")
    assert verify_password("noodles42", hashed)
    assert not verify_password("noodles43", hashed)
    assert not verify_password("", hashed)
    assert not verify_password("noodles42", None)
    assert not verify_password("noodles42", "not-a-hash")


def test_hash_rejects_non_strings():
    with pytest.raises(TypeError):
        hash_password(None)


def test_verify_accepts_werkzeug_hashes():
    legacy = generate_password_hash("noodles42", method="pbkdf2:sha256")
    assert verify_password("noodles42", legacy)
    assert not verify_password("wrong-one1", legacy)


@pytest.mark.parametrize(
    "password, fragment",
    [
        ("abc1", "eight characters"),
        ("Password1", "less common"),
        ("somchai123", "closely related"),
        ("12345678", "letters"),
        ("abcdefgh", "number or symbol"),
        ("aaab1234", "repeated"),
    ],
)
def test_password_policy(password, fragment):
    assert fragment in validate_password("somchai", password)


def test_password_policy_accepts_reasonable_password():
    assert validate_password("somchai", "noodles42") is None


def test_sensitive_values_round_trip():
    cipher = build_cipher(Fernet.generate_key())
    token = encrypt_sensitive_value(cipher, "Gate 3")

    assert token != "Gate 3"
    assert decrypt_sensitive_value(cipher, token) == "Gate 3"
    assert decrypt_sensitive_value(cipher, encrypt_sensitive_value(cipher, None)) == ""


def test_plaintext_values_pass_through_decrypt():
    cipher = build_cipher(Fernet.generate_key())

    assert decrypt_sensitive_value(cipher, "Gate 3") == "Gate 3"
    assert decrypt_sensitive_value(cipher, None) == ""
    assert decrypt_sensitive_value(cipher, "") == ""


def test_key_from_environment(monkeypatch, tmp_path):
    key = Fernet.generate_key()
    monkeypatch.setenv("MARKET_SENSITIVE_KEY", key.decode("utf-8"))

    assert load_sensitive_key(tmp_path / "unused.txt") == key
    assert not (tmp_path / "unused.txt").exists()


def test_key_file_is_created_once(monkeypatch, tmp_path):
    monkeypatch.delenv("MARKET_SENSITIVE_KEY", raising=False)
    key_file = tmp_path / "key.txt"

    first = load_sensitive_key(key_file)
    second = load_sensitive_key(key_file)

    assert key_file.exists()
    assert first == second
    build_cipher(first)


def test_ephemeral_key_without_file(monkeypatch, caplog):
    monkeypatch.delenv("MARKET_SENSITIVE_KEY", raising=False)

    key = load_sensitive_key(None)

    build_cipher(key)
    assert "will not survive a restart" in caplog.text
