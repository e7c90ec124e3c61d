"""Custom exception classes for the metering service."""


class ConfigurationError(ValueError):
    """Raised when configuration validation fails."""


class DefaultSecretKeyError(ConfigurationError):
    """Raised when default JWT secret key is used in production."""

    def __init__(self) -> None:
        super().__init__(
            "JWT_SECRET_KEY must be changed from the default value in production. "
            "Set the JWT_SECRET_KEY environment variable to a secure random string.",
        )


class ShortSecretKeyError(ConfigurationError):
    """Raised when JWT secret key is too short in production."""

    def __init__(self) -> None:
        super().__init__("JWT_SECRET_KEY must be at least 32 characters in production.")


class UserNotFoundError(LookupError):
    """Raised when a metering operation targets a user that does not exist."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class UnknownPlanError(ValueError):
    """Raised when an upgrade references a plan id that is not in the catalogue."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Unknown subscription plan: {plan_id}")


class InvalidWebhookSignatureError(ValueError):
    """Raised when a payment webhook body does not match its signature."""

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature")


class UpstreamProviderError(RuntimeError):
    """Raised when the AI provider call fails."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider} request failed: {message}")


class ProviderRateLimitedError(UpstreamProviderError):
    """Raised when the provider keeps answering 429 after all retries."""

    def __init__(self, provider: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(provider, f"rate limited after {attempts} attempts", status_code=429)


class ProviderConfigurationError(UpstreamProviderError):
    """Raised when the selected provider has no API key configured."""

    def __init__(self, provider: str) -> None:
        super().__init__(provider, "API key is not configured")
