from __future__ import annotations

from dataclasses import dataclass
import logging
import time

import jwt
import requests

from autocherry.config import GitHubAppConfig
from autocherry.observability import log_event


LOGGER = logging.getLogger("autocherry.app_auth")
_JWT_LIFETIME_SECONDS = 540
_CLOCK_SKEW_SECONDS = 60
_REQUEST_TIMEOUT_SECONDS = 30


class GitHubAuthError(RuntimeError):
    pass


def build_app_jwt(app_id: int, private_key_pem: bytes, *, now: float | None = None) -> str:
    issued_at = int(now if now is not None else time.time()) - _CLOCK_SKEW_SECONDS
    claims = {
        "iat": issued_at,
        "exp": issued_at + _JWT_LIFETIME_SECONDS,
        "iss": str(app_id),
    }
    try:
        return jwt.encode(claims, private_key_pem, algorithm="RS256")
    except (ValueError, TypeError, jwt.PyJWTError) as exc:
        raise GitHubAuthError(f"Unable to sign GitHub App JWT: {type(exc).__name__}") from exc


@dataclass(frozen=True)
class InstallationTokenProvider:
    """Mints a fresh installation access token on every call; nothing is cached."""

    app: GitHubAppConfig
    session: requests.Session | None = None

    def token_for(self, installation_id: int) -> str:
        app_jwt = build_app_jwt(self.app.app_id, self.app.private_key_pem)
        url = f"{self.app.api_url}/app/installations/{installation_id}/access_tokens"
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {app_jwt}",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        http = self.session or requests
        try:
            response = http.post(url, headers=headers, timeout=_REQUEST_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            raise GitHubAuthError(
                f"Installation token request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code != 201:
            log_event(
                LOGGER,
                "installation_token_failed",
                installation_id=installation_id,
                status_code=response.status_code,
            )
            raise GitHubAuthError(
                f"Installation token request for {installation_id} returned "
                f"status {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GitHubAuthError("Installation token response was not JSON") from exc
        token = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise GitHubAuthError("Installation token response did not include a token")

        log_event(LOGGER, "installation_token_issued", installation_id=installation_id)
        return token
