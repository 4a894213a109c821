"""
Integration Registry — the fixed set of third-party integrations a tenant
can store credentials for.

Registries are plain instances handed to the vault; build a fresh one with
``default_registry()`` rather than sharing module state.
"""
from enum import Enum

from pydantic import BaseModel, Field


class IntegrationType(str, Enum):
    GITHUB = "github"
    SLACK = "slack"
    DISCORD = "discord"
    X = "x"


class IntegrationDefinition(BaseModel):
    """Metadata describing one integration variant."""

    type: IntegrationType
    name: str
    description: str = ""
    available: bool = False
    docs_url: str | None = None
    features: list[str] = Field(default_factory=list)
    required_scopes: list[str] = Field(default_factory=list)


BUILTIN_INTEGRATIONS = (
    IntegrationDefinition(
        type=IntegrationType.GITHUB,
        name="GitHub",
        description="Connect to your GitHub organizations",
        available=True,
        docs_url=(
            "https://docs.github.com/en/apps/oauth-apps/"
            "building-oauth-apps/creating-an-oauth-app"
        ),
        required_scopes=["read:org", "repo"],
    ),
    IntegrationDefinition(
        type=IntegrationType.SLACK,
        name="Slack",
        description="Connect Slack workspace for notifications and commands",
        features=["notifications", "commands"],
        required_scopes=["channels:read", "chat:write"],
    ),
    IntegrationDefinition(
        type=IntegrationType.DISCORD,
        name="Discord",
        description="Connect Discord server for notifications",
        features=["notifications"],
        required_scopes=["bot"],
    ),
    IntegrationDefinition(
        type=IntegrationType.X,
        name="X (Twitter)",
        description="Connect X account for social tracking",
        features=["posts", "mentions"],
        required_scopes=["tweet.read", "users.read"],
    ),
)


class IntegrationRegistry:
    """Lookup of integration definitions keyed by ``IntegrationType``."""

    def __init__(self, definitions=()):
        self._definitions: dict[IntegrationType, IntegrationDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: IntegrationDefinition) -> None:
        self._definitions[definition.type] = definition

    def is_supported(self, value: str) -> bool:
        try:
            return IntegrationType(value) in self._definitions
        except ValueError:
            return False

    def get(self, value: str | IntegrationType) -> IntegrationDefinition:
        """Return the definition for an integration.

        Raises:
            KeyError: If the integration is unknown to this registry.
        """
        try:
            return self._definitions[IntegrationType(value)]
        except ValueError:
            raise KeyError(value) from None

    def available(self) -> list[IntegrationDefinition]:
        return [d for d in self._definitions.values() if d.available]

    def __iter__(self):
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)


def default_registry() -> IntegrationRegistry:
    """A new registry holding the built-in integrations."""
    return IntegrationRegistry(BUILTIN_INTEGRATIONS)
