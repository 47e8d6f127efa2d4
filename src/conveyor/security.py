"""Bearer-token roles for the HTTP surface.

Two optional credentials, both read from the environment on every request:

    CONVEYOR_API_KEY        operator token. Guards triggers, aborts and all
                            read endpoints except /health.
    CONVEYOR_APPROVER_KEYS  comma-separated ``identity=token`` pairs. When
                            set, answering an approval gate requires one of
                            these tokens and the submitter identity is taken
                            from the token, so a caller cannot answer a gate
                            in someone else's name. Approver tokens may also
                            list open gates.

With neither variable set every endpoint is open and the submitter identity
comes from the request body.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

API_KEY_ENV = "CONVEYOR_API_KEY"
APPROVER_KEYS_ENV = "CONVEYOR_APPROVER_KEYS"

_bearer = HTTPBearer(auto_error=False)


class Role(str, Enum):
    OPERATOR = "operator"
    APPROVER = "approver"


@dataclass(frozen=True)
class Principal:
    """Who is calling. ``identity`` is set only for approver tokens."""

    role: Role
    identity: str | None = None


_ANONYMOUS = Principal(role=Role.OPERATOR)


def approver_tokens() -> dict[str, str]:
    """Parse CONVEYOR_APPROVER_KEYS into ``{token: identity}``.

    Malformed entries are logged and ignored.
    """
    raw = os.environ.get(APPROVER_KEYS_ENV, "")
    tokens: dict[str, str] = {}
    for entry in filter(None, (part.strip() for part in raw.split(","))):
        identity, sep, token = entry.partition("=")
        if not sep or not identity.strip() or not token.strip():
            logger.warning("Ignoring malformed %s entry", APPROVER_KEYS_ENV)
            continue
        tokens[token.strip()] = identity.strip()
    return tokens


def get_security_config() -> dict:
    """Which credentials are enforced, for /health."""
    return {
        "operator_auth_required": os.environ.get(API_KEY_ENV) is not None,
        "approver_tokens": len(approver_tokens()),
    }


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _match_operator(token: str) -> Principal | None:
    expected = os.environ.get(API_KEY_ENV)
    if expected is not None and secrets.compare_digest(token.encode(), expected.encode()):
        return Principal(role=Role.OPERATOR)
    return None


def _match_approver(token: str) -> Principal | None:
    for candidate, identity in approver_tokens().items():
        if secrets.compare_digest(token.encode(), candidate.encode()):
            return Principal(role=Role.APPROVER, identity=identity)
    return None


def _client(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def require_operator(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Principal:
    """Dependency for trigger, abort and run/history reads."""
    if os.environ.get(API_KEY_ENV) is None:
        return _ANONYMOUS
    if credentials is None:
        logger.warning("Operator request without credentials from %s", _client(request))
        raise _unauthorized("Authentication required. Provide Authorization: Bearer <api_key>.")
    principal = _match_operator(credentials.credentials)
    if principal is None:
        logger.warning("Invalid operator key from %s", _client(request))
        raise _unauthorized("Invalid API key.")
    return principal


async def require_gate_reader(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Principal:
    """Dependency for listing open gates: operator or any approver token."""
    if credentials is not None:
        principal = _match_approver(credentials.credentials)
        if principal is not None:
            return principal
    return await require_operator(request, credentials)


async def require_approver(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Principal:
    """Dependency for answering approval gates.

    With approver tokens configured only those tokens are accepted and the
    returned principal carries the submitter identity. Otherwise the
    operator rule applies.
    """
    if not approver_tokens():
        return await require_operator(request, credentials)
    if credentials is None:
        logger.warning("Approval input without credentials from %s", _client(request))
        raise _unauthorized("Approver token required.")
    principal = _match_approver(credentials.credentials)
    if principal is None:
        logger.warning("Invalid approver token from %s", _client(request))
        raise _unauthorized("Invalid approver token.")
    return principal
