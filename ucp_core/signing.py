# Copyright 2026 UCP Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Detached JWS Signing

Signatures used by the checkout core follow the AP2 merchant_authorization
format: a JWS Detached Content signature (RFC 7515 Appendix F) over the JCS
canonical form (RFC 8785) of a JSON payload.

Format: <base64url-header>..<base64url-signature>

Used for:
- Request-Signature on outbound webhooks (signed with the business key)
- Proof of authorization on payment token redemption (verified against the
  merchant's registered public key)
"""

import base64
import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


DETACHED_JWS_PATTERN = re.compile(r"^([A-Za-z0-9_-]+)\.\.([A-Za-z0-9_-]+)$")


class SignatureAlgorithm(str, Enum):
    """Supported signature algorithms."""
    ES256 = "ES256"
    ES384 = "ES384"
    ES512 = "ES512"


_HASHES = {
    SignatureAlgorithm.ES256: hashes.SHA256,
    SignatureAlgorithm.ES384: hashes.SHA384,
    SignatureAlgorithm.ES512: hashes.SHA512,
}

_CURVE_ALGORITHMS = {
    "secp256r1": SignatureAlgorithm.ES256,
    "secp384r1": SignatureAlgorithm.ES384,
    "secp521r1": SignatureAlgorithm.ES512,
}


class SigningKey(BaseModel):
    """Public signing key in JWK form, as published in a UCP profile."""
    kid: str = Field(..., description="Key ID")
    kty: str = Field(default="EC", description="Key type")
    crv: str = Field(default="P-256", description="Curve name")
    x: str = Field(..., description="X coordinate (base64url)")
    y: str = Field(..., description="Y coordinate (base64url)")
    alg: str = Field(default="ES256", description="Algorithm")


def base64url_encode(data: bytes) -> str:
    """Encode bytes to base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def base64url_decode(data: str) -> bytes:
    """Decode base64url string to bytes."""
    padding = 4 - len(data) % 4
    if padding != 4:
        data += '=' * padding
    return base64.urlsafe_b64decode(data)


def jcs_canonicalize(obj: Any) -> bytes:
    """
    JSON Canonicalization Scheme (JCS) per RFC 8785.

    Produces deterministic, byte-for-byte identical JSON representation.
    """
    return json.dumps(
        obj,
        ensure_ascii=False,
        allow_nan=False,
        indent=None,
        separators=(',', ':'),
        sort_keys=True
    ).encode('utf-8')


def _coordinate_size(curve: ec.EllipticCurve) -> int:
    return (curve.key_size + 7) // 8


def algorithm_for_key(key) -> SignatureAlgorithm:
    return _CURVE_ALGORITHMS[key.curve.name]


def generate_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def load_private_key(path: str) -> ec.EllipticCurvePrivateKey:
    """Load a PEM-encoded EC private key."""
    key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError(f"{path} does not contain an EC private key")
    return key


def private_key_to_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_to_jwk(key: ec.EllipticCurvePublicKey, kid: str) -> SigningKey:
    numbers = key.public_numbers()
    size = _coordinate_size(key.curve)
    crv = {"secp256r1": "P-256", "secp384r1": "P-384", "secp521r1": "P-521"}[key.curve.name]
    return SigningKey(
        kid=kid,
        crv=crv,
        x=base64url_encode(numbers.x.to_bytes(size, "big")),
        y=base64url_encode(numbers.y.to_bytes(size, "big")),
        alg=algorithm_for_key(key).value,
    )


class DetachedSigner:
    """
    Creates detached JWS signatures with an EC private key.

    Args:
        private_key: EC private key for signing
        kid: Key ID to include in JWS header
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey, kid: str = "business_key_1"):
        self.private_key = private_key
        self.kid = kid
        self.algorithm = algorithm_for_key(private_key)

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.private_key.public_key()

    def public_jwk(self) -> SigningKey:
        return public_key_to_jwk(self.public_key, self.kid)

    def sign(self, payload: Dict[str, Any]) -> str:
        """
        Sign a JSON payload.

        Args:
            payload: The object to sign (canonicalized with JCS)

        Returns:
            Detached JWS string: <header>..<signature>
        """
        header = {
            "alg": self.algorithm.value,
            "kid": self.kid
        }
        encoded_header = base64url_encode(json.dumps(header).encode('utf-8'))
        encoded_payload = base64url_encode(jcs_canonicalize(payload))
        signing_input = f"{encoded_header}.{encoded_payload}".encode('utf-8')

        der = self.private_key.sign(signing_input, ec.ECDSA(_HASHES[self.algorithm]()))
        r, s = decode_dss_signature(der)
        size = _coordinate_size(self.private_key.curve)
        raw = r.to_bytes(size, "big") + s.to_bytes(size, "big")

        return f"{encoded_header}..{base64url_encode(raw)}"


def verify_detached(
    signature: str,
    payload: Dict[str, Any],
    public_key: ec.EllipticCurvePublicKey,
) -> Tuple[bool, Optional[str]]:
    """
    Verify a detached JWS over ``payload``.

    Args:
        signature: The detached JWS string
        payload: The object that was signed
        public_key: Key expected to have produced the signature

    Returns:
        Tuple of (is_valid, error_message)
    """
    match = DETACHED_JWS_PATTERN.match(signature or "")
    if not match:
        return False, "Invalid detached JWS format"

    header_b64, signature_b64 = match.groups()
    try:
        header = json.loads(base64url_decode(header_b64))
        raw = base64url_decode(signature_b64)
    except ValueError as e:
        return False, f"Malformed signature: {e}"
    if not isinstance(header, dict):
        return False, "JWS header is not an object"

    alg = header.get("alg")
    if alg not in [a.value for a in SignatureAlgorithm]:
        return False, f"Unsupported algorithm: {alg}"
    algorithm = SignatureAlgorithm(alg)
    if algorithm != algorithm_for_key(public_key):
        return False, f"Algorithm {alg} does not match key curve {public_key.curve.name}"

    size = _coordinate_size(public_key.curve)
    if len(raw) != 2 * size:
        return False, "Signature has wrong length"
    der = encode_dss_signature(
        int.from_bytes(raw[:size], "big"),
        int.from_bytes(raw[size:], "big"),
    )

    encoded_payload = base64url_encode(jcs_canonicalize(payload))
    signing_input = f"{header_b64}.{encoded_payload}".encode('utf-8')
    try:
        public_key.verify(der, signing_input, ec.ECDSA(_HASHES[algorithm]()))
    except InvalidSignature:
        return False, "Signature does not verify"

    return True, None


class KeyRegistry:
    """Known public keys by owner (merchant id or business id)."""

    def __init__(self):
        self._keys: Dict[str, ec.EllipticCurvePublicKey] = {}

    def register(self, owner_id: str, public_key: ec.EllipticCurvePublicKey) -> None:
        self._keys[owner_id] = public_key
        logger.info(f"Registered public key for {owner_id}")

    def get(self, owner_id: str) -> Optional[ec.EllipticCurvePublicKey]:
        return self._keys.get(owner_id)

    def __contains__(self, owner_id: str) -> bool:
        return owner_id in self._keys
