"""Engine configuration and per-organization policy."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_SYSTEM_INSTRUCTION = """You are a helpful assistant talking with a customer on behalf of a business.

Keep replies short and natural for the channel. Use what you know about the contact,
follow any operator notes exactly, and never invent prices, dates or commitments.
If you do not know something, say so and offer to follow up."""

FALLBACK_REPLY = "Sorry, we're having trouble replying right now. We'll get back to you shortly."


@dataclass
class PolicyConfig:
    """Thresholds that are policy rather than architecture.

    Every organization can override any of these through
    ``EngineConfig.organization_policies``.
    """

    inactivity_hours: float = 24.0
    reactivation_days: float = 7.0
    summarize_every: int = 10
    extract_every: int = 10
    max_session_notes: int = 10
    max_contact_notes: int = 20
    max_context_tokens: int = 4000
    memory_share: float = 0.05
    summary_share: float = 0.10
    briefing_share: float = 0.05
    window_max_messages: int = 10
    summary_max_tokens: int = 400
    default_country_code: str = "1"

    def __post_init__(self) -> None:
        if self.summarize_every < 1 or self.extract_every < 1:
            raise ValueError("summarize_every and extract_every must be positive")
        if self.max_context_tokens <= 0:
            raise ValueError("max_context_tokens must be positive")
        for name in ("memory_share", "summary_share", "briefing_share"):
            share = getattr(self, name)
            if not 0.0 <= share <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")


@dataclass
class EngineConfig:
    """Configuration for the conversation engine."""

    db_path: Path | None = None
    model: str = "llama-3.1-70b-versatile"
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    fallback_reply: str = FALLBACK_REPLY
    model_timeout: float = 30.0
    turn_lease_timeout: float = 120.0
    max_response_tokens: int = 512
    postprocess_attempts: int = 3
    postprocess_backoff: float = 1.0
    sweep_interval: float = 300  # 5 minutes
    default_policy: PolicyConfig = field(default_factory=PolicyConfig)
    organization_policies: dict[str, PolicyConfig] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = Path.home() / ".tether" / "tether.db"

    def policy_for(self, organization: str) -> PolicyConfig:
        """Return the policy for an organization, falling back to the default."""
        return self.organization_policies.get(organization, self.default_policy)

    def set_policy(self, organization: str, **overrides: object) -> PolicyConfig:
        """Derive an organization policy from the default with some fields changed."""
        policy = replace(self.default_policy, **overrides)
        self.organization_policies[organization] = policy
        return policy


def _config_from_env() -> EngineConfig:
    """Load configuration from environment variables."""
    policy = PolicyConfig(
        max_context_tokens=int(os.getenv("TETHER_MAX_CONTEXT_TOKENS", "4000")),
        inactivity_hours=float(os.getenv("TETHER_INACTIVITY_HOURS", "24")),
        reactivation_days=float(os.getenv("TETHER_REACTIVATION_DAYS", "7")),
        summarize_every=int(os.getenv("TETHER_SUMMARIZE_EVERY", "10")),
        extract_every=int(os.getenv("TETHER_EXTRACT_EVERY", "10")),
    )

    db_path = os.getenv("TETHER_DB_PATH")

    return EngineConfig(
        db_path=Path(db_path) if db_path else None,
        model=os.getenv("GROQ_MODEL", "llama-3.1-70b-versatile"),
        model_timeout=float(os.getenv("TETHER_MODEL_TIMEOUT", "30")),
        turn_lease_timeout=float(os.getenv("TETHER_TURN_LEASE_TIMEOUT", "120")),
        default_policy=policy,
    )
