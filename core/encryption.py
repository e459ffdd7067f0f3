"""
Credential codec: authenticated symmetric encryption of credential records.

Tokens are compact JWEs (alg=dir, enc=A256GCM) whose plaintext is a JWT
claim set {"data": <record>, "iat": <epoch seconds>}. A single server-held
256-bit key, given as 64 hex characters, encrypts and decrypts.
"""

import json
import logging
import secrets
import time
from typing import Any, Dict, Optional, Union

from jose import jwe
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError

from core.exceptions import CredentialDecryptError

logger = logging.getLogger(__name__)

KEY_BYTES = 32


def generate_key() -> str:
    """Return a fresh 256-bit key as 64 hex characters."""
    return secrets.token_hex(KEY_BYTES)


def _key_from_hex(key_hex: Optional[str]) -> bytes:
    if not key_hex:
        raise CredentialDecryptError("Encryption key is not configured")
    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError as e:
        raise CredentialDecryptError("Encryption key is not valid hex", original_exception=e)
    if len(key) != KEY_BYTES:
        raise CredentialDecryptError(
            "Encryption key has the wrong length",
            context={"expected_bytes": KEY_BYTES, "actual_bytes": len(key)}
        )
    return key


class CredentialCodec:
    """
    Encrypts credential records at rest and in transit between components.

    The key is validated lazily so a process without ENCRYPTION_KEY can
    still pass already-decrypted records through `decrypt`.
    """

    def __init__(self, key_hex: Optional[str]):
        self._key_hex = key_hex

    @property
    def _key(self) -> bytes:
        return _key_from_hex(self._key_hex)

    def encrypt(self, record: Dict[str, Any]) -> str:
        claims = {"data": record, "iat": int(time.time())}
        token = jwe.encrypt(
            json.dumps(claims, separators=(",", ":")).encode("utf-8"),
            self._key,
            algorithm=ALGORITHMS.DIR,
            encryption=ALGORITHMS.A256GCM,
        )
        return token.decode("ascii") if isinstance(token, bytes) else token

    def decrypt(self, token: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Decrypt a credential token.

        Already-decrypted records (dicts) pass through unchanged, since
        callers along the pipeline may receive either form.

        Raises:
            CredentialDecryptError: Malformed token, failed authentication
                tag, missing key, or a payload that is not a record
        """
        if isinstance(token, dict):
            return token

        if not isinstance(token, str) or not token.strip():
            raise CredentialDecryptError(
                "Credential token must be a non-empty string",
                context={"token_type": type(token).__name__}
            )

        key = self._key
        try:
            plaintext = jwe.decrypt(token.strip(), key)
        except JOSEError as e:
            # The message from jose does not echo the token
            raise CredentialDecryptError("Credential token could not be decrypted", original_exception=e)
        except (ValueError, TypeError) as e:
            raise CredentialDecryptError("Credential token is malformed", original_exception=e)

        if plaintext is None:
            raise CredentialDecryptError("Credential token could not be decrypted")

        try:
            claims = json.loads(plaintext)
        except ValueError as e:
            raise CredentialDecryptError("Credential payload is not JSON", original_exception=e)

        data = claims.get("data") if isinstance(claims, dict) else None
        if not isinstance(data, dict):
            raise CredentialDecryptError("Credential payload does not contain a record")

        return data
