import pytest
from cryptography.fernet import Fernet
from click.testing import CliRunner

from inbox_sync.cli import cli
from inbox_sync.core import encryption
from inbox_sync.core.config import settings
from inbox_sync.core.encryption import decrypt_token, encrypt_token, rotate_token


@pytest.fixture
def use_keys(monkeypatch):
    """Swap FERNET_KEY for the duration of a test, dropping the cached keyring."""

    def _use(*keys: str) -> None:
        monkeypatch.setattr(settings, "FERNET_KEY", ",".join(keys))
        monkeypatch.setattr(encryption, "_keyring", None)

    return _use


def test_round_trip():
    ciphertext = encrypt_token("xoxb-secret")

    assert ciphertext != "xoxb-secret"
    assert decrypt_token(ciphertext) == "xoxb-secret"


def test_empty_values_pass_through():
    assert encrypt_token("") == ""
    assert decrypt_token("") == ""


def test_corrupted_token_is_rejected():
    with pytest.raises(ValueError, match="Invalid or corrupted"):
        decrypt_token("not-a-fernet-token")


def test_missing_key_is_a_configuration_error(use_keys):
    use_keys()

    with pytest.raises(RuntimeError, match="FERNET_KEY not configured"):
        encrypt_token("x")


def test_old_key_still_decrypts_after_prepending_new_key(use_keys):
    old, new = Fernet.generate_key().decode(), Fernet.generate_key().decode()
    use_keys(old)
    ciphertext = encrypt_token("refresh-1")

    use_keys(new, old)
    assert decrypt_token(ciphertext) == "refresh-1"

    rotated = rotate_token(ciphertext)
    use_keys(new)
    assert decrypt_token(rotated) == "refresh-1"
    with pytest.raises(ValueError):
        decrypt_token(ciphertext)


def test_rotate_tokens_command(db, make_connection, use_keys):
    old = settings.FERNET_KEY
    connection = make_connection()
    new = Fernet.generate_key().decode()
    use_keys(new, old)

    result = CliRunner().invoke(cli, ["rotate-tokens"])

    assert result.exit_code == 0, result.output
    assert "Rotated tokens for 1 connections" in result.output
    use_keys(new)
    db.refresh(connection)
    assert decrypt_token(connection.access_token_encrypted) == "access-token"
    assert decrypt_token(connection.refresh_token_encrypted) == "refresh-token"
