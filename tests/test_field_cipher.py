import pytest
from sqlalchemy import text

from clinicpay.field_cipher import FieldCipher, FieldDecryptionError, get_field_cipher, is_encrypted
from clinicpay.models import User

KEY = bytes(range(32))


def test_round_trip():
    cipher = FieldCipher(KEY)
    envelope = cipher.encrypt("+91 98000 00001")
    assert cipher.decrypt(envelope) == "+91 98000 00001"


def test_round_trip_unicode():
    cipher = FieldCipher(KEY)
    assert cipher.decrypt(cipher.encrypt("नमस्ते: a:b:c")) == "नमस्ते: a:b:c"


def test_envelope_shape():
    nonce, tag, ciphertext = FieldCipher(KEY).encrypt("secret").split(":")
    assert len(bytes.fromhex(nonce)) == 12
    assert len(bytes.fromhex(tag)) == 16
    assert len(bytes.fromhex(ciphertext)) == len("secret")


def test_same_plaintext_gets_fresh_nonce():
    cipher = FieldCipher(KEY)
    envelopes = {cipher.encrypt("same value") for _ in range(50)}
    assert len(envelopes) == 50
    assert len({e.split(":")[0] for e in envelopes}) == 50


@pytest.mark.parametrize("value", [None, ""])
def test_empty_passes_through(value):
    cipher = FieldCipher(KEY)
    assert cipher.encrypt(value) == value
    assert cipher.decrypt(value) == value


def test_tampered_ciphertext_raises():
    cipher = FieldCipher(KEY)
    nonce, tag, ciphertext = cipher.encrypt("secret").split(":")
    flipped = format(int(ciphertext[:2], 16) ^ 0x01, "02x") + ciphertext[2:]
    with pytest.raises(FieldDecryptionError):
        cipher.decrypt(f"{nonce}:{tag}:{flipped}")


def test_wrong_key_raises():
    envelope = FieldCipher(KEY).encrypt("secret")
    with pytest.raises(FieldDecryptionError):
        FieldCipher(bytes(32)).decrypt(envelope)


@pytest.mark.parametrize(
    "envelope",
    [
        "plaintext-phone",
        "aa:bb",
        "zz:zz:zz",
        "00" * 11 + ":" + "00" * 16 + ":00",
        "00" * 12 + ":" + "00" * 15 + ":00",
    ],
)
def test_malformed_envelope_raises(envelope):
    with pytest.raises(FieldDecryptionError):
        FieldCipher(KEY).decrypt(envelope)


def test_key_must_be_32_bytes():
    with pytest.raises(ValueError):
        FieldCipher(b"short")


def test_is_encrypted():
    assert is_encrypted(FieldCipher(KEY).encrypt("x"))
    assert not is_encrypted("x")
    assert not is_encrypted(None)


def test_encrypted_column_stored_as_envelope(db, seeded):
    raw = db.execute(text("SELECT phone FROM users WHERE id = :id"), {"id": seeded.patient_id}).scalar()
    assert raw != "+919800000001"
    assert is_encrypted(raw)
    assert get_field_cipher().decrypt(raw) == "+919800000001"

    db.expire_all()
    assert db.get(User, seeded.patient_id).phone == "+919800000001"
