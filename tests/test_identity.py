"""
Enigmo - Identity tests.
"""

import base64

import pytest

from enigmo.constants import USER_ID_LENGTH
from enigmo.errors import InvalidKeyMaterial
from enigmo.identity import (
    AgreementKeyPair,
    Identity,
    SigningKeyPair,
    derive_user_id,
    export_public,
    fingerprint,
    generate_identity,
)


def test_generate_identity_key_sizes():
    local = generate_identity(nickname="alice")

    assert len(local.identity.signing_public_key) == 32
    assert len(local.identity.agreement_public_key) == 32
    assert local.nickname == "alice"
    assert len(local.id) == USER_ID_LENGTH


def test_user_id_derived_from_signing_key():
    local = generate_identity()
    assert local.id == derive_user_id(local.identity.signing_public_key)
    assert local.id == fingerprint(local.identity.signing_public_key)[:USER_ID_LENGTH]


def test_identities_are_distinct():
    assert generate_identity().id != generate_identity().id


def test_export_public_has_no_private_material():
    local = generate_identity()
    exported = export_public(local)

    assert set(exported) == {"signingPublicKey", "agreementPublicKey"}
    assert local.signing.get_private_key_bytes() not in exported.values()
    assert local.agreement.get_private_key_bytes() not in exported.values()


def test_keypair_restore_from_private_bytes():
    signing = SigningKeyPair()
    agreement = AgreementKeyPair()

    assert (
        SigningKeyPair.from_private_bytes(signing.get_private_key_bytes()).get_public_key_bytes()
        == signing.get_public_key_bytes()
    )
    assert (
        AgreementKeyPair.from_private_bytes(agreement.get_private_key_bytes()).get_public_key_bytes()
        == agreement.get_public_key_bytes()
    )


def test_wire_roundtrip_keeps_keys():
    identity = generate_identity().identity
    restored = Identity.from_wire(identity.to_wire())

    assert restored.id == identity.id
    assert restored.same_keys(identity)


@pytest.mark.parametrize(
    "signing, agreement",
    [
        (None, base64.b64encode(b"\x01" * 32).decode()),
        ("not base64!!", base64.b64encode(b"\x01" * 32).decode()),
        (base64.b64encode(b"\x01" * 31).decode(), base64.b64encode(b"\x01" * 32).decode()),
        (base64.b64encode(b"\x01" * 32).decode(), base64.b64encode(b"\x01" * 33).decode()),
    ],
)
def test_from_wire_rejects_bad_keys(signing, agreement):
    with pytest.raises(InvalidKeyMaterial):
        Identity.from_wire({"signingPublicKey": signing, "agreementPublicKey": agreement})


def test_identity_rejects_short_keys():
    with pytest.raises(InvalidKeyMaterial):
        Identity(id="x", signing_public_key=b"\x01" * 16, agreement_public_key=b"\x01" * 32)
