# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Signing, verification and hybrid RSA/AES-GCM encryption primitives"""

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature, InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat, load_der_public_key

from courier.exceptions import DecryptionError, EncryptionError, SignError

__all__ = (  # noqa: RUF022
    'RSA_KEY_SIZE',
    'RSA_PUBLIC_EXPONENT',
    'AES_KEY_SIZE',
    'NONCE_SIZE',

    'HybridCiphertext',

    'generate_private_key',
    'public_key_der',
    'load_public_key',

    'sign',
    'verify',
    'encrypt_for',
    'decrypt_from',
)


RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
AES_KEY_SIZE = 32  # bytes
NONCE_SIZE = 12  # bytes


@dataclass(frozen=True, slots=True)
class HybridCiphertext:
    wrapped_key: bytes
    nonce: bytes
    ciphertext: bytes  # includes the 16 byte GCM tag


def _oaep() -> padding.OAEP:
    return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def generate_private_key() -> RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_SIZE)


def public_key_der(key: RSAPublicKey | RSAPrivateKey) -> bytes:
    """Return the DER encoded SubjectPublicKeyInfo for the key"""
    if isinstance(key, RSAPrivateKey):
        key = key.public_key()
    return key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def load_public_key(der: bytes) -> RSAPublicKey:
    """Load an RSA public key from its DER encoded SubjectPublicKeyInfo"""
    try:
        key = load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ValueError(f'Invalid public key: {exc}') from exc
    if not isinstance(key, RSAPublicKey):
        raise ValueError(f'Unsupported public key type: {key.__class__.__qualname__!r} (expected an RSA public key)')
    return key


def sign(data: bytes, private_key: RSAPrivateKey) -> bytes:
    """Sign data using RSASSA-PKCS1-v1_5 with SHA-256"""
    try:
        return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SignError(f'Failed to sign data: {exc}') from exc


def verify(data: bytes, signature: bytes, public_key: RSAPublicKey) -> bool:
    """Check the signature over data, returning False instead of raising if it doesn't match"""
    try:
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


def encrypt_for(payload: bytes, public_key: RSAPublicKey) -> HybridCiphertext:
    """Encrypt payload with a fresh AES-256-GCM key that is wrapped for the public key owner"""
    key = AESGCM.generate_key(bit_length=AES_KEY_SIZE * 8)
    nonce = os.urandom(NONCE_SIZE)
    try:
        ciphertext = AESGCM(key).encrypt(nonce, payload, None)
        wrapped_key = public_key.encrypt(key, _oaep())
    except (ValueError, TypeError, OverflowError) as exc:
        raise EncryptionError(f'Failed to encrypt payload: {exc}') from exc
    return HybridCiphertext(wrapped_key=wrapped_key, nonce=nonce, ciphertext=ciphertext)


def decrypt_from(wrapped_key: bytes, nonce: bytes, ciphertext: bytes, private_key: RSAPrivateKey) -> bytes:
    """Unwrap the AES key and decrypt the ciphertext. Never returns unauthenticated data."""
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError(f'Invalid nonce length: {len(nonce)} (expected {NONCE_SIZE})')
    try:
        key = private_key.decrypt(wrapped_key, _oaep())
    except ValueError as exc:
        raise DecryptionError('Failed to unwrap the content key') from exc
    if len(key) != AES_KEY_SIZE:
        raise DecryptionError(f'Invalid content key length: {len(key)} (expected {AES_KEY_SIZE})')
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError('Ciphertext authentication failed') from exc
