"""
Configuration module for the Checkout Age Gate service.

This module uses Pydantic Settings to load and validate environment variables
for the BigCommerce store, the relying-party (ConnectID) registration, the
verification session store and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the storefront, the OIDC relying party, session
    lifetimes and security policies is defined here.
    """

    # =========================================================================
    # BigCommerce Store Configuration
    # =========================================================================

    STORE_DOMAIN: str = Field(
        ...,
        description="Public storefront domain (e.g., shop.example.com)",
        min_length=1,
    )

    STORE_HASH: str = Field(
        ...,
        description="BigCommerce store hash used in API paths",
        min_length=1,
    )

    CATEGORY_ID: int = Field(
        ...,
        description="Catalog category whose products are age-restricted",
        ge=1,
    )

    ACCESS_TOKEN: str = Field(
        ...,
        description="BigCommerce REST API access token (X-Auth-Token)",
        min_length=1,
    )

    BIGCOMMERCE_API_URL: str = Field(
        default="https://api.bigcommerce.com",
        description="BigCommerce REST API base URL",
    )

    STOREFRONT_TOKEN: Optional[str] = Field(
        None,
        description="Initial storefront GraphQL token (minted on demand when absent)",
    )

    STOREFRONT_CHANNEL_ID: int = Field(
        default=1,
        description="Channel the storefront token is minted for",
        ge=1,
    )

    STOREFRONT_TOKEN_LIFETIME_SECONDS: int = Field(
        default=3600,
        description="Lifetime requested for newly minted storefront tokens",
        ge=60,
    )

    # =========================================================================
    # Relying Party (OIDC / FAPI) Configuration
    # =========================================================================

    CLIENT_ID: str = Field(
        ...,
        description="Relying party client ID registered with the identity directory",
        min_length=1,
    )

    REDIRECT_URI: Optional[str] = Field(
        None,
        description="Redirect URI registered for the client (defaults to the store checkout)",
    )

    REGISTRY_PARTICIPANTS_URI: str = Field(
        default="https://data.directory.sandbox.connectid.com.au/participants",
        description="Directory endpoint listing identity providers and their authorisation servers",
    )

    SIGNING_KID: Optional[str] = Field(
        None,
        description="Key ID of the client assertion signing key",
    )

    SIGNING_KEY_PATH: Optional[str] = Field(
        None,
        description="PEM file with the private key used for private_key_jwt client assertions",
    )

    TRANSPORT_CERT_PATH: Optional[str] = Field(
        None,
        description="PEM transport certificate for mutual TLS with authorisation servers",
    )

    TRANSPORT_KEY_PATH: Optional[str] = Field(
        None,
        description="PEM private key for the transport certificate",
    )

    CA_CERT_PATH: Optional[str] = Field(
        None,
        description="CA bundle used to verify authorisation servers",
    )

    ID_TOKEN_SIGNING_ALG: str = Field(
        default="PS256",
        description="Algorithm ID tokens are expected to be signed with",
    )

    EXPECTED_ISSUER: Optional[str] = Field(
        None,
        description="Issuer the diagnostics checks compare ID tokens against",
    )

    PURPOSE: str = Field(
        default="Age verification required",
        description="Default purpose shown on the identity provider consent screen",
        min_length=3,
        max_length=300,
    )

    AGE_CLAIM: str = Field(
        default="over18",
        description="Essential claim that proves the shopper meets the age threshold",
    )

    PARTICIPANTS_CACHE_SECONDS: int = Field(
        default=600,
        description="Time to cache the participants directory and discovery documents",
        ge=0,
    )

    # =========================================================================
    # Verification Session Configuration
    # =========================================================================

    SESSION_TOKEN_SECRET: str = Field(
        ...,
        description="Secret for signing verification session tokens",
        min_length=32,
    )

    SESSION_TOKEN_ALGORITHM: str = Field(
        default="HS256",
        description="Session token signing algorithm (HS256, HS384, or HS512)",
    )

    VERIFICATION_TTL_SECONDS: int = Field(
        default=3600,
        description="How long a completed age verification stays valid for a cart",
        ge=60,
        le=86400,
    )

    PENDING_FLOW_TTL_SECONDS: int = Field(
        default=600,
        description="How long an in-flight authorisation may wait for its callback",
        ge=30,
        le=3600,
    )

    FLOW_COOKIE_MAX_AGE_SECONDS: int = Field(
        default=180,
        description="Max-Age of the state/nonce/code_verifier cookies",
        ge=30,
        le=3600,
    )

    CART_COOKIE_MAX_AGE_SECONDS: int = Field(
        default=3600,
        description="Max-Age of the cart_id cookie set by /set-cart-id",
        ge=60,
        le=86400,
    )

    SESSION_SWEEP_SECONDS: float = Field(
        default=60.0,
        description="Interval of the expired-record sweeper (0 disables it)",
        ge=0,
    )

    BYPASS_CODES: Optional[str] = Field(
        None,
        description="Comma-separated codes that skip the restricted-item check (empty disables bypass)",
    )

    # =========================================================================
    # Upstream / Server Configuration
    # =========================================================================

    UPSTREAM_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout applied to every upstream HTTP call",
        gt=0,
        le=120,
    )

    CATALOG_WARM_ON_STARTUP: bool = Field(
        default=True,
        description="Load the restricted SKU set when the service starts",
    )

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (defaults to the store domain)",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level",
    )

    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")

    PORT: int = Field(default=3001, description="Port to bind the server", ge=1, le=65535)

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse ALLOWED_ORIGINS, falling back to the storefront origin.

        Returns:
            List of allowed origin URLs.
        """
        if not self.ALLOWED_ORIGINS:
            return [f"https://{self.STORE_DOMAIN}"]

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def bypass_codes_list(self) -> List[str]:
        if not self.BYPASS_CODES:
            return []
        return [code.strip() for code in self.BYPASS_CODES.split(",") if code.strip()]

    @property
    def redirect_uri(self) -> str:
        return self.REDIRECT_URI or f"https://{self.STORE_DOMAIN}/checkout"

    @property
    def bigcommerce_store_url(self) -> str:
        """REST base URL for this store, without trailing slash."""
        return f"{self.BIGCOMMERCE_API_URL.rstrip('/')}/stores/{self.STORE_HASH}"

    @property
    def storefront_graphql_url(self) -> str:
        return f"https://store-{self.STORE_HASH}.mybigcommerce.com/graphql"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("SESSION_TOKEN_ALGORITHM")
    @classmethod
    def validate_token_algorithm(cls, v: str) -> str:
        """
        Validate the session token algorithm is one of the supported HMAC algorithms.

        Raises:
            ValueError: If algorithm is not supported
        """
        allowed_algorithms = ["HS256", "HS384", "HS512"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"Session token algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v

    @field_validator("STORE_DOMAIN")
    @classmethod
    def validate_store_domain(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix):]

        if not v or " " in v or "/" in v:
            raise ValueError(
                f"Invalid store domain: '{v}'. Expected a bare host such as 'shop.example.com'"
            )

        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()
