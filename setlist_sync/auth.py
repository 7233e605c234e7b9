"""Authentication capability consumed by the voting engine and aggregator"""

from abc import ABC, abstractmethod
from typing import Optional


class AuthProvider(ABC):
    """Only two capabilities are consumed: the authenticated flag and login()."""

    @property
    @abstractmethod
    def is_authenticated(self) -> bool:
        ...

    @abstractmethod
    def login(self) -> None:
        """Trigger the provider's login flow."""
        ...


class RequestAuth(AuthProvider):
    """
    Per-request auth for the HTTP surface.

    A bearer token marks the caller as authenticated (token verification is
    the auth provider's job, upstream of this service). login() cannot open a
    login flow from the server side, so it records that the response must ask
    the client to log in.
    """

    def __init__(self, bearer_token: Optional[str] = None):
        self.bearer_token = bearer_token
        self.login_requested = False

    @classmethod
    def from_header(cls, authorization: Optional[str]) -> "RequestAuth":
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
            return cls(token or None)
        return cls(None)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.bearer_token)

    def login(self) -> None:
        self.login_requested = True
