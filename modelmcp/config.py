from functools import lru_cache
from typing import List, Literal, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WRAP_MODES: Tuple[str, ...] = ("query", "get")


def split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # --- Server identity ---
    server_name: str = Field(default="modelmcp", validation_alias="MCP_SERVER_NAME")
    server_version: str = Field(default="1.0.0", validation_alias="MCP_SERVER_VERSION")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    host: str = Field(default="127.0.0.1", validation_alias="MCP_HOST")
    port: int = Field(default=8000, validation_alias="MCP_PORT")

    # --- Authentication ---
    # "inherit" delegates to the host authenticator, "none" disables the check
    auth: Literal["inherit", "none"] = Field(default="inherit", validation_alias="MCP_AUTH")
    auth_user: Optional[str] = Field(default=None, validation_alias="MCP_AUTH_USER")
    auth_pass: Optional[str] = Field(default=None, validation_alias="MCP_AUTH_PASS")
    auth_tokens: str = Field(default="", validation_alias="MCP_AUTH_TOKENS")
    auth_roles: str = Field(default="", validation_alias="MCP_AUTH_ROLES")

    # --- Entity wrapping ---
    wrap_entities_to_actions: bool = Field(default=False, validation_alias="MCP_WRAP_ENTITIES")
    wrap_entity_modes: Optional[str] = Field(default=None, validation_alias="MCP_WRAP_ENTITY_MODES")

    # --- Instructions ---
    instructions: Optional[str] = Field(default=None, validation_alias="MCP_INSTRUCTIONS")
    instructions_file: Optional[str] = Field(default=None, validation_alias="MCP_INSTRUCTIONS_FILE")

    # --- Query limits ---
    max_page_size: int = Field(default=200, validation_alias="MCP_MAX_PAGE_SIZE")
    default_page_size: int = Field(default=25, validation_alias="MCP_DEFAULT_PAGE_SIZE")
    resource_max_page_size: int = Field(default=1000, validation_alias="MCP_RESOURCE_MAX_PAGE_SIZE")
    resource_default_page_size: int = Field(default=100, validation_alias="MCP_RESOURCE_DEFAULT_PAGE_SIZE")
    query_timeout: float = Field(default=10.0, validation_alias="MCP_QUERY_TIMEOUT")
    max_concurrent_queries: int = Field(default=8, validation_alias="MAX_CONCURRENT_QUERIES")
    query_queue_timeout: float = Field(default=15.0, validation_alias="QUERY_QUEUE_TIMEOUT")

    # --- Catalog ---
    enable_model_description: bool = Field(default=True, validation_alias="MCP_ENABLE_MODEL_DESCRIPTION")
    resource_scheme: str = Field(default="odata", validation_alias="MCP_RESOURCE_SCHEME")
    model_file: Optional[str] = Field(default=None, validation_alias="MCP_MODEL_FILE")
    data_file: Optional[str] = Field(default=None, validation_alias="MCP_DATA_FILE")

    # --- Backend ---
    backend_url: Optional[str] = Field(default=None, validation_alias="MCP_BACKEND_URL")
    backend_token: Optional[str] = Field(default=None, validation_alias="MCP_BACKEND_TOKEN")

    # --- CORS ---
    cors_allowed_origins: str = Field(default="", validation_alias="CORS_ALLOWED_ORIGINS")

    @property
    def configured_wrap_modes(self) -> Optional[Tuple[str, ...]]:
        """Globally configured wrap modes, or None when left at the built-in default."""
        modes = split_csv(self.wrap_entity_modes)
        return tuple(modes) if modes else None


@lru_cache()
def get_settings() -> Settings:
    return Settings()
