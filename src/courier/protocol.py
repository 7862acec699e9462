# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Compose, seal, open and verify envelopes"""

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from courier import crypto
from courier.exceptions import DecryptionError
from courier.messages import EncryptedBlob, Envelope, Payload, SignedContent, SignedEnvelope
from courier.messages.datamodel import Nonce

__all__ = 'compose', 'seal_for_recipient', 'open_envelope', 'verify_envelope'


def compose(sender: str, kind: Payload, timestamp: int, private_key: RSAPrivateKey) -> SignedEnvelope:
    """Build a signed envelope for the payload kind, signed over its canonical encoding"""
    content = SignedContent.new(sender=sender, kind=kind, timestamp=timestamp)
    signature = crypto.sign(content.to_wire(), private_key)
    return SignedEnvelope(content=content, sender_key=crypto.public_key_der(private_key), signature=signature)


def seal_for_recipient(signed_envelope: bytes, recipient_key: RSAPublicKey) -> Envelope:
    """Encrypt the serialized signed envelope for the recipient and frame it as a sealed envelope"""
    ciphertext = crypto.encrypt_for(signed_envelope, recipient_key)
    blob = EncryptedBlob(wrapped_key=ciphertext.wrapped_key, nonce=Nonce(ciphertext.nonce), ciphertext=ciphertext.ciphertext)
    return Envelope.sealed(blob)


def open_envelope(envelope: Envelope, private_key: RSAPrivateKey) -> SignedEnvelope:
    """
    Return the signed envelope carried by envelope, decrypting it first if it is sealed.

    Raises DecryptionError if a sealed envelope cannot be decrypted with the
    private key and ParseError if the (decrypted) signed envelope is malformed.
    """
    match envelope.body:
        case SignedEnvelope() as signed_envelope:
            return signed_envelope
        case EncryptedBlob() as blob:
            data = crypto.decrypt_from(blob.wrapped_key, blob.nonce, blob.ciphertext, private_key)
            return SignedEnvelope.parse(data)
        case body:
            raise DecryptionError(f'Unexpected envelope body: {body.__class__.__qualname__!r}')


def verify_envelope(signed_envelope: SignedEnvelope) -> bool:
    """Verify the signature with the sender key embedded in the envelope"""
    try:
        public_key = crypto.load_public_key(signed_envelope.sender_key)
    except ValueError:
        return False
    return crypto.verify(signed_envelope.content.to_wire(), signed_envelope.signature, public_key)
