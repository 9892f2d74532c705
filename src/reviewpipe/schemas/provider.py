"""Provider configuration and invocation Pydantic schemas."""

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


ProviderId = Literal["claude", "cursor-agent", "pi"]
ModelTier = Literal["fast", "balanced", "thorough"]

CANONICAL_TIERS: tuple[str, ...] = ("fast", "balanced", "thorough")
TIER_ALIASES: dict[str, str] = {"free": "fast", "premium": "thorough"}

# Badge label and CSS class shown for a tier when a model sets neither
TIER_BADGES: dict[str, tuple[str, str]] = {
    "fast": ("Fastest", "badge-speed"),
    "balanced": ("Recommended", "badge-recommended"),
    "thorough": ("Most Thorough", "badge-power"),
}


def normalize_tier(tier: str) -> str:
    """Map tier aliases onto canonical tiers.

    Raises:
        ValueError: If the tier is neither canonical nor a known alias
    """
    tier = TIER_ALIASES.get(tier, tier)
    if tier not in CANONICAL_TIERS:
        valid = ", ".join(CANONICAL_TIERS + tuple(TIER_ALIASES))
        raise ValueError(f"Invalid tier {tier!r}. Valid tiers: {valid}")
    return tier


def prettify_model_id(model_id: str) -> str:
    """``anthropic/claude-opus`` -> ``Anthropic Claude Opus``."""
    words = re.sub(r"[/-]", " ", model_id).split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


class ModelDefinition(BaseModel):
    """A model a provider can run, built in or from the config file."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    id: str = Field(min_length=1, description="Model identifier passed to the CLI")
    tier: ModelTier = Field(description="Capability tier used for model selection")
    name: str | None = Field(default=None, description="Human-readable model name")
    tagline: str = Field(default="", description="Short label shown next to the name")
    description: str = Field(default="", description="Longer description for model pickers")
    badge: str | None = Field(default=None, description="Badge label; defaults from the tier")
    badge_class: str | None = Field(
        default=None, alias="badgeClass", description="Badge CSS class; defaults from the tier"
    )
    cli_model: str | None = Field(
        default=None,
        description="Model string for the CLI when it differs from id; explicit null omits model flags",
    )
    extra_args: list[str] = Field(default_factory=list, description="Arguments appended for this model")
    env: dict[str, str] = Field(default_factory=dict, description="Environment variables for this model")
    default: bool = Field(default=False, description="Whether this is the provider's default model")

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: object) -> object:
        if isinstance(value, str):
            return normalize_tier(value)
        return value

    @property
    def has_cli_model(self) -> bool:
        """True when ``cli_model`` was given explicitly, even as null."""
        return "cli_model" in self.model_fields_set

    @property
    def display_name(self) -> str:
        return self.name or prettify_model_id(self.id)

    @property
    def display_badge(self) -> str:
        return self.badge or TIER_BADGES[self.tier][0]

    @property
    def display_badge_class(self) -> str:
        return self.badge_class or TIER_BADGES[self.tier][1]


class ProviderConfig(BaseModel):
    """Caller-supplied overrides for one provider."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    command: str | None = Field(default=None, description="Command used instead of the default binary")
    install_instructions: str | None = Field(
        default=None, alias="installInstructions", description="Install hint shown when the CLI is missing"
    )
    extra_args: list[str] = Field(default_factory=list, description="Arguments appended to every invocation")
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment for every invocation")
    yolo: bool = Field(default=False, description="Drop tool restrictions")
    models: list[ModelDefinition] | None = Field(
        default=None, description="Model list replacing the built-in catalogue"
    )

    def find_model(self, model_id: str) -> ModelDefinition | None:
        for model in self.models or []:
            if model.id == model_id:
                return model
        return None


class Invocation(BaseModel):
    """Resolved command line for a full agentic run.

    When ``use_shell`` is true, ``command`` is the complete shell string and
    ``args`` is empty.
    """

    command: str
    args: list[str] = Field(default_factory=list)
    use_shell: bool = False
    env: dict[str, str] = Field(default_factory=dict)

    def popen_args(self) -> str | list[str]:
        return self.command if self.use_shell else [self.command, *self.args]


class ExtractionConfig(Invocation):
    """Resolved command line for a tool-free JSON extraction call."""

    prompt_via_stdin: bool = True
