from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientConfig(BaseSettings):
    """Immutable client configuration.

    Values are read from keyword arguments first, then from ``CAI_*``
    environment variables and an optional ``.env`` file.

    Attributes:
        token: Account API token.
        web_next_auth: Optional web session cookie sent with some requests.
        ws_url: Duplex websocket endpoint.
        neo_url: Base URL of the neo REST service.
        plus_url: Base URL of the plus REST service.
        beta_url: Base URL of the legacy REST service.
        origin_id: Origin tag stamped on outgoing envelopes.
        user_agent: User agent sent on every request.
        connect_timeout: Websocket handshake timeout in seconds.
        request_timeout: Default deadline for acknowledgement-style operations.
        turn_timeout: Default deadline for operations that generate text.
        http_timeout: Timeout for REST requests.
        stale_frame_window: Seconds during which late frames of a timed-out
            operation are expected and discarded.
        proxy: Optional proxy URL for REST requests.
    """

    model_config = SettingsConfigDict(
        env_prefix="CAI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    token: SecretStr = Field(default=SecretStr(""), description="Account API token")
    web_next_auth: str | None = Field(default=None, description="Web session cookie")
    ws_url: str = "wss://neo.character.ai/ws/"
    neo_url: str = "https://neo.character.ai/"
    plus_url: str = "https://plus.character.ai/"
    beta_url: str = "https://beta.character.ai/"
    origin_id: str = "web-next"
    user_agent: str = "Mozilla/5.0"
    connect_timeout: float = Field(default=30.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    turn_timeout: float = Field(default=120.0, gt=0)
    http_timeout: float = Field(default=30.0, gt=0)
    stale_frame_window: float = Field(default=60.0, ge=0)
    proxy: str | None = None

    def ws_headers(self) -> dict[str, str]:
        """Headers sent with the websocket handshake."""
        token = self.token.get_secret_value()
        cookie = f'HTTP_AUTHORIZATION="Token {token}"'
        if self.web_next_auth:
            cookie = f"{cookie}; {self.web_next_auth}"
        return {
            "Authorization": f"Token {token}",
            "Cookie": cookie,
            "User-Agent": self.user_agent,
        }

    def http_headers(self, *, include_web_next_auth: bool = False) -> dict[str, str]:
        """Headers sent with REST requests."""
        headers = {
            "Authorization": f"Token {self.token.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }
        if include_web_next_auth and self.web_next_auth:
            headers["Cookie"] = self.web_next_auth
        return headers
