import json
from typing import Mapping, Optional, Protocol


class CredentialStore(Protocol):
    @property
    def user_id(self) -> Optional[str]: ...
    @property
    def username(self) -> Optional[str]: ...
    @property
    def access_token(self) -> Optional[str]: ...


class MappingCredentials:
    """Read-only view over the keys the login flow stores: userId, username, token."""

    def __init__(self, values: Optional[Mapping[str, object]] = None):
        self._values = dict(values or {})

    def _get(self, *keys: str) -> Optional[str]:
        for k in keys:
            v = self._values.get(k)
            if v is not None and str(v).strip():
                return str(v)
        return None

    @property
    def user_id(self) -> Optional[str]:
        return self._get("userId", "user_id", "id")

    @property
    def username(self) -> Optional[str]:
        return self._get("username", "userName")

    @property
    def access_token(self) -> Optional[str]:
        return self._get("token", "accessToken", "access_token")


class FileCredentials(MappingCredentials):
    """Credentials persisted as a JSON object; re-read on every lookup."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path

    def _get(self, *keys: str) -> Optional[str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        self._values = data
        return super()._get(*keys)


def mask_token(token: Optional[str]) -> str:
    if not token:
        return "<none>"
    if len(token) <= 12:
        return "***"
    return f"{token[:6]}...{token[-6:]}"
