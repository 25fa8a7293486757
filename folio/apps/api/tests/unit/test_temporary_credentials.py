"""Temporary credential generation, hashing and single-use handling."""

import pytest

from folio_api.billing.credentials import (
    TEMP_PASSWORD_ALPHABET,
    TEMP_PASSWORD_LENGTH,
    CredentialDiscarded,
    generate_temporary_password,
    issue_temporary_credential,
    verify_password,
)


def test_generated_password_shape():
    password = generate_temporary_password()
    assert len(password) == TEMP_PASSWORD_LENGTH
    assert set(password) <= set(TEMP_PASSWORD_ALPHABET)


def test_generated_passwords_differ():
    assert len({generate_temporary_password() for _ in range(20)}) == 20


def test_issued_credential_hash_verifies():
    credential = issue_temporary_credential(rounds=4)
    plaintext = credential.reveal()

    assert credential.password_hash != plaintext
    assert verify_password(plaintext, credential.password_hash)
    assert not verify_password(plaintext + "x", credential.password_hash)


def test_discard_zeroes_and_blocks_reveal():
    credential = issue_temporary_credential(rounds=4)
    credential.discard()
    credential.discard()

    assert credential.discarded
    with pytest.raises(CredentialDiscarded):
        credential.reveal()


def test_repr_never_shows_plaintext():
    credential = issue_temporary_credential(rounds=4)
    plaintext = credential.reveal()

    assert plaintext not in repr(credential)
    assert plaintext not in str(credential)
    assert "[REDACTED]" in repr(credential)
