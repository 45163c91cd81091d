#
# Copyright (c) 2024-2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""RFC 2617 / RFC 8760 digest authentication for SIP challenges."""

from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional

_PARAM_RE = re.compile(r'([\w-]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^,\s]+)')

_HASHES: Dict[str, Callable] = {
    "MD5": hashlib.md5,
    "SHA-256": hashlib.sha256,
}


class AuthChallengeUnsupported(ValueError):
    """Raised for a challenge this client cannot answer."""


@dataclass
class DigestCredentials:
    """Username and password used to answer challenges."""

    username: str
    password: str


@dataclass
class DigestChallenge:
    """A parsed WWW-Authenticate or Proxy-Authenticate challenge."""

    realm: str
    nonce: str
    algorithm: str = "MD5"
    qop: Optional[str] = None
    opaque: Optional[str] = None
    stale: bool = False

    @classmethod
    def parse(cls, header_value: str) -> DigestChallenge:
        """Parse a challenge header value.

        Raises:
            AuthChallengeUnsupported: If the scheme is not Digest or the
                challenge has no nonce.
        """
        scheme, _, rest = header_value.strip().partition(" ")
        if scheme.lower() != "digest":
            raise AuthChallengeUnsupported(f"Unsupported auth scheme {scheme!r}")
        params: Dict[str, str] = {}
        for key, value in _PARAM_RE.findall(rest):
            if value.startswith('"'):
                value = value[1:-1].replace('\\"', '"')
            params[key.lower()] = value
        if "nonce" not in params:
            raise AuthChallengeUnsupported("Challenge carries no nonce")
        return cls(
            realm=params.get("realm", ""),
            nonce=params["nonce"],
            algorithm=params.get("algorithm", "MD5"),
            qop=params.get("qop"),
            opaque=params.get("opaque"),
            stale=params.get("stale", "").lower() == "true",
        )


def _hash_for(algorithm: str) -> Callable[[str], str]:
    base = algorithm.upper()
    if base.endswith("-SESS"):
        base = base[: -len("-SESS")]
    hash_fn = _HASHES.get(base)
    if hash_fn is None:
        raise AuthChallengeUnsupported(f"Unsupported digest algorithm {algorithm!r}")
    return lambda value: hash_fn(value.encode()).hexdigest()


def select_qop(offered: Optional[str]) -> Optional[str]:
    """Pick the quality of protection to answer with.

    Returns "auth" when offered, None for an RFC 2069 challenge without qop.

    Raises:
        AuthChallengeUnsupported: If only auth-int (or unknown values) is offered.
    """
    if offered is None:
        return None
    options = [o.strip().lower() for o in offered.split(",")]
    if "auth" in options:
        return "auth"
    raise AuthChallengeUnsupported(f"Unsupported qop {offered!r}")


def compute_digest_response(
    *,
    username: str,
    realm: str,
    password: str,
    method: str,
    uri: str,
    nonce: str,
    qop: Optional[str],
    cnonce: str,
    nc: str,
    algorithm: str = "MD5",
) -> str:
    """Compute the digest "response" value.

    HA1 = H(username:realm:password), HA2 = H(method:uri) and
    response = H(HA1:nonce:nc:cnonce:qop:HA2), or H(HA1:nonce:HA2) when the
    challenge has no qop. "-sess" algorithms fold nonce and cnonce into HA1.

    Raises:
        AuthChallengeUnsupported: For an unknown algorithm.
    """
    h = _hash_for(algorithm)
    ha1 = h(f"{username}:{realm}:{password}")
    if algorithm.upper().endswith("-SESS"):
        ha1 = h(f"{ha1}:{nonce}:{cnonce}")
    ha2 = h(f"{method}:{uri}")
    if qop:
        return h(f"{ha1}:{nonce}:{nc}:{cnonce}:{qop}:{ha2}")
    return h(f"{ha1}:{nonce}:{ha2}")


def build_authorization(
    challenge: DigestChallenge,
    credentials: DigestCredentials,
    *,
    method: str,
    uri: str,
    nonce_count: int = 1,
    cnonce: Optional[str] = None,
) -> str:
    """Build an Authorization / Proxy-Authorization header value.

    Args:
        challenge: The parsed challenge.
        credentials: Username and password.
        method: Method of the request being authorized.
        uri: Request-URI of the request being authorized.
        nonce_count: Times this nonce has been used, including this one.
        cnonce: Client nonce; generated when not given.

    Returns:
        The header value, starting with "Digest ".
    """
    qop = select_qop(challenge.qop)
    cnonce = cnonce or os.urandom(8).hex()
    nc = f"{nonce_count:08x}"
    response = compute_digest_response(
        username=credentials.username,
        realm=challenge.realm,
        password=credentials.password,
        method=method,
        uri=uri,
        nonce=challenge.nonce,
        qop=qop,
        cnonce=cnonce,
        nc=nc,
        algorithm=challenge.algorithm,
    )

    parts = [
        f'username="{credentials.username}"',
        f'realm="{challenge.realm}"',
        f'nonce="{challenge.nonce}"',
        f'uri="{uri}"',
        f'response="{response}"',
        f"algorithm={challenge.algorithm}",
    ]
    if challenge.opaque is not None:
        parts.append(f'opaque="{challenge.opaque}"')
    if qop:
        parts.extend([f"qop={qop}", f"nc={nc}", f'cnonce="{cnonce}"'])
    return "Digest " + ", ".join(parts)
