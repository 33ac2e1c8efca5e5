from __future__ import annotations

from typing import Any, Protocol

import requests

from coursetally.errors import AuthRequired, ProviderError
from coursetally.models import IdentityConfig


class IdentityProvider(Protocol):
    def access_token(self) -> str: ...

    def user_email(self) -> str: ...


class StaticIdentity:
    def __init__(self, config: IdentityConfig) -> None:
        self.config = config

    def access_token(self) -> str:
        if not self.config.access_token:
            raise AuthRequired("Access token not found. Please sign in first.")
        return self.config.access_token

    def user_email(self) -> str:
        if not self.config.user_email:
            raise AuthRequired("User email not found. Please sign in first.")
        return self.config.user_email


def bearer_headers(identity: IdentityProvider) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {identity.access_token()}",
        "Accept": "application/json",
    }


def _error_message(response: requests.Response) -> str:
    try:
        payload: Any = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:300]}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return f"HTTP {response.status_code}: {error['message']}"
        if payload.get("message"):
            return f"HTTP {response.status_code}: {payload['message']}"
    return f"HTTP {response.status_code}"


def checked_json(response: requests.Response, source: str) -> Any:
    if response.status_code in {401, 403}:
        raise AuthRequired(f"{source}: credential rejected ({_error_message(response)})")
    if not response.ok:
        raise ProviderError(source, _error_message(response), status_code=response.status_code)
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(source, "response is not valid JSON", status_code=response.status_code) from exc
