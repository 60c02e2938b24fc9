"""
Request authentication for tribes.

A token arrives either as the `token` query parameter or the `x-jwt` header
and is one of:

* a JWT (HS256, signed with JWT_KEY) carrying a `pubkey` claim, or
* a Sphinx signed timestamp: urlsafe base64 of a 4 byte big endian unix time
  followed by a 65 byte compact secp256k1 signature. The node's pubkey is
  recovered from the signature. A leading "." marks tokens signed over the
  base64 text of the timestamp, for signers that only sign utf8.
"""
import base64
import hashlib
import logging
import struct
import time
from typing import Dict, Optional, Tuple

import jwt
from ecdsa import SigningKey, VerifyingKey, SECP256k1
from ecdsa.keys import BadSignatureError
from ecdsa.util import sigdecode_string, sigencode_string_canonize

from utils.database import get_workspace, has_workspace_role

logger = logging.getLogger(__name__)

ALGO = "HS256"
SIGNED_MSG_PREFIX = b"Lightning Signed Message:"
TOKEN_MAX_AGE_SECONDS = 300


class AuthError(Exception):
    """Raised when a token cannot be turned into a pubkey."""
    pass


def mint_jwt(pubkey: str, secret: str, ttl_seconds: int = 7 * 24 * 3600, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "pubkey": pubkey,
        "iat": now,
        "exp": now + ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, secret, algorithm=ALGO)


def decode_jwt(token: str, secret: str) -> Dict:
    return jwt.decode(token, secret, algorithms=[ALGO], options={"require": ["exp"]})


def _signed_digest(msg: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(SIGNED_MSG_PREFIX + msg).digest()).digest()


def sign_message(msg: bytes, private_key_hex: str) -> bytes:
    """Compact 65 byte recoverable signature, as produced by lightning nodes' signmessage."""
    sk = SigningKey.from_string(bytes.fromhex(private_key_hex), curve=SECP256k1)
    digest = _signed_digest(msg)
    signature = sk.sign_digest_deterministic(digest, sigencode=sigencode_string_canonize)
    expected = sk.get_verifying_key().to_string("compressed")
    candidates = VerifyingKey.from_public_key_recovery_with_digest(
        signature, digest, SECP256k1, sigdecode=sigdecode_string
    )
    for recid, candidate in enumerate(candidates):
        if candidate.to_string("compressed") == expected:
            return bytes([27 + 4 + recid]) + signature
    raise AuthError("could not derive a recovery id")


def recover_pubkey(msg: bytes, sig: bytes) -> str:
    """Recover the hex compressed pubkey that produced a compact signature over msg."""
    if len(sig) != 65:
        raise AuthError("invalid signature length")
    recid = (sig[0] - 27) & 3
    digest = _signed_digest(msg)
    try:
        candidates = VerifyingKey.from_public_key_recovery_with_digest(
            sig[1:], digest, SECP256k1, sigdecode=sigdecode_string
        )
        if recid >= len(candidates):
            raise AuthError("invalid recovery id")
        vk = candidates[recid]
        vk.verify_digest(sig[1:], digest, sigdecode=sigdecode_string)
    except AuthError:
        raise
    except BadSignatureError:
        raise AuthError("invalid signature")
    except Exception as e:
        raise AuthError(f"signature recovery failed: {e}")
    return vk.to_string("compressed").hex()


def parse_token_string(token: str) -> Tuple[int, bytes, bytes]:
    force_utf8 = token.startswith(".")
    if force_utf8:
        token = token[1:]
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
    except (ValueError, TypeError) as e:
        raise AuthError(f"token is not base64: {e}")
    if len(raw) < 5:
        raise AuthError("invalid signature (too short)")
    time_buf, sig = raw[:4], raw[4:]
    (ts,) = struct.unpack(">I", time_buf)
    if force_utf8:
        return ts, base64.urlsafe_b64encode(time_buf), sig
    return ts, time_buf, sig


def make_signed_token(private_key_hex: str, ts: Optional[int] = None, force_utf8: bool = False) -> str:
    time_buf = struct.pack(">I", int(ts if ts is not None else time.time()))
    msg = base64.urlsafe_b64encode(time_buf) if force_utf8 else time_buf
    token = base64.urlsafe_b64encode(time_buf + sign_message(msg, private_key_hex)).decode()
    return f".{token}" if force_utf8 else token


def verify_signed_token(token: str, check_timestamp: bool = True) -> str:
    ts, msg, sig = parse_token_string(token)
    pubkey = recover_pubkey(msg, sig)
    if check_timestamp:
        now = int(time.time())
        if ts < now - TOKEN_MAX_AGE_SECONDS:
            raise AuthError("too late")
        if ts > now:
            raise AuthError("too early")
    return pubkey


def pubkey_from_token(token: Optional[str], jwt_secret: str) -> str:
    """Resolve a request token to a pubkey, raising AuthError when it is unusable."""
    if not token:
        raise AuthError("no token")

    if "." in token and not token.startswith("."):
        try:
            claims = decode_jwt(token, jwt_secret)
        except jwt.PyJWTError as e:
            raise AuthError(f"Failed to parse JWT: {e}")
        pubkey = claims.get("pubkey")
        if not pubkey:
            raise AuthError("JWT has no pubkey claim")
        return pubkey

    return verify_signed_token(token)


async def user_has_access(pubkey: str, workspace_uuid: str, role: str, db=None) -> bool:
    """Workspace owners hold every role, everybody else needs an explicit grant."""
    if not pubkey or not workspace_uuid:
        return False
    workspace = await get_workspace(workspace_uuid, db=db)
    if workspace and workspace["owner_pubkey"] == pubkey:
        return True
    return await has_workspace_role(workspace_uuid, pubkey, role, db=db)
