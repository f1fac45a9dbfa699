"""gatewaychat configuration, loaded from environment / .env file."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from gatewaychat.utils.images import (
    IMAGE_SEND_HARD_MAX_BYTES,
    IMAGE_SEND_MAX_DIMENSION_PX,
    IMAGE_SEND_TARGET_BYTES,
    IMAGE_SEND_TOTAL_MAX_BYTES,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="GATEWAYCHAT_", extra="ignore")

    # Where the device identity blob lives
    state_dir: Path = Path.home() / ".gatewaychat"

    # Gateway connection
    gateway_url: str = "ws://127.0.0.1:18789"
    gateway_token: str = ""
    auto_connect: bool = False  # connect on FastAPI startup

    # Client descriptor sent in the connect handshake
    client_id: str = "webchat-ui"
    client_version: str = "0.1.0"
    client_mode: str = "webchat"
    role: str = "operator"
    scopes: list[str] = ["operator.admin"]
    locale: str = "en-US"

    # Timing (seconds)
    handshake_delay: float = 0.7  # send connect unprompted if no challenge arrives
    request_timeout: float = 30.0
    history_limit: int = 20

    # History-poll fallback for runs whose terminal event never arrives
    fallback_initial_delay: float = 6.0
    fallback_interval: float = 4.0
    fallback_max_attempts: int = 15
    fallback_clock_skew: float = 2.0

    # Attachment image budgets (bytes of data URL text)
    image_send_target_bytes: int = IMAGE_SEND_TARGET_BYTES
    image_send_hard_max_bytes: int = IMAGE_SEND_HARD_MAX_BYTES
    image_send_total_max_bytes: int = IMAGE_SEND_TOTAL_MAX_BYTES
    image_send_max_dimension_px: int = IMAGE_SEND_MAX_DIMENSION_PX

    cors_origins: list[str] = ["http://localhost:5173"]

    @property
    def identity_path(self) -> Path:
        return self.state_dir / "identity" / "openclaw.gateway.device.v1.json"


settings = Settings()
