"""Capability registry - specialist agent definitions and discovery.

Each agent is defined by an AgentDescriptor that declares its domain
keywords, tools, and the system prompt used when it answers. The set of
agents is closed: AgentId enumerates every identifier, and the registry
refuses to start unless every member has exactly one descriptor.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

import structlog

log = structlog.get_logger(__name__)


class AgentId(StrEnum):
    """Fixed identifiers of the routable agents."""

    CODER = "coder"
    RESEARCHER = "researcher"
    SECRETARY = "secretary"
    HOME = "home"
    FINANCE = "finance"
    IMAGEGEN = "imagegen"
    PERSONALITY = "personality"


DEFAULT_AGENT = AgentId.PERSONALITY


def parse_agent_id(value: object) -> AgentId | None:
    """Return the AgentId for a loosely-typed value, or None if it is not one."""
    if isinstance(value, AgentId):
        return value
    if not isinstance(value, str):
        return None
    try:
        return AgentId(value.strip().lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class AgentDescriptor:
    """Static description of one routable agent.

    Keywords may be single words or multi-word phrases; the heuristic
    router scores phrases higher than words. Tools are listed in planning
    priority order.
    """

    id: AgentId
    name: str
    description: str
    capabilities: tuple[str, ...]
    keywords: tuple[str, ...]
    tools: tuple[str, ...] = ()
    system_prompt: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name cannot be empty")
        if not self.capabilities:
            raise ValueError("Agent must declare at least one capability")
        if any(keyword != keyword.lower() for keyword in self.keywords):
            raise ValueError(f"Keywords for '{self.id}' must be lower-case")


class CapabilityRegistry:
    """Immutable catalog of agent descriptors, keyed by AgentId.

    Construct once at startup and inject wherever routing or execution
    needs descriptor lookups.
    """

    def __init__(
        self,
        descriptors: Iterable[AgentDescriptor],
        default_agent: AgentId = DEFAULT_AGENT,
    ) -> None:
        agents: dict[AgentId, AgentDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in agents:
                raise ValueError(
                    f"Agent '{descriptor.id}' is already registered. "
                    "Each AgentId needs exactly one descriptor."
                )
            agents[descriptor.id] = descriptor

        missing = [agent for agent in AgentId if agent not in agents]
        if missing:
            raise ValueError(
                f"Missing descriptors for agents: {', '.join(sorted(missing))}"
            )

        # Preserve AgentId declaration order so heuristic tie-breaks are stable
        self._agents = {agent: agents[agent] for agent in AgentId}
        self._default_agent = default_agent

        log.info(
            "registry.initialized",
            agents=[agent.value for agent in self._agents],
            default_agent=default_agent.value,
        )

    def get(self, agent_id: AgentId) -> AgentDescriptor:
        return self._agents[agent_id]

    def list_agents(self) -> list[AgentDescriptor]:
        return list(self._agents.values())

    def find_by_capability(self, capability: str) -> list[AgentDescriptor]:
        """Find all agents that declare a capability (case-insensitive)."""
        needle = capability.lower()
        return [
            descriptor
            for descriptor in self._agents.values()
            if any(needle == item.lower() for item in descriptor.capabilities)
        ]

    def find_by_tool(self, tool: str) -> list[AgentDescriptor]:
        return [d for d in self._agents.values() if tool in d.tools]

    def get_default(self) -> AgentDescriptor:
        """Return the general-purpose agent used when nothing else matches."""
        return self._agents[self._default_agent]

    @property
    def default_agent(self) -> AgentId:
        return self._default_agent


# ------------------------------------------------------------------ #
# Built-in agent table
# ------------------------------------------------------------------ #

DEFAULT_DESCRIPTORS: tuple[AgentDescriptor, ...] = (
    AgentDescriptor(
        id=AgentId.CODER,
        name="DevBot",
        description="Expert software engineer for coding, debugging, and GitHub operations",
        capabilities=(
            "Code review and analysis",
            "Bug fixing and debugging",
            "GitHub PR and issue management",
            "SQL and database operations",
            "Architecture recommendations",
        ),
        keywords=(
            "code", "bug", "debug", "github", "pr", "pull request", "implement",
            "function", "class", "error", "exception", "sql", "database", "query",
            "api", "endpoint", "refactor", "review", "commit", "merge", "branch",
        ),
        tools=(
            "github_search_code", "github_get_file", "github_list_prs",
            "github_create_issue", "github_create_pr",
            "supabase_run_sql", "supabase_get_schema", "supabase_vector_search",
        ),
        system_prompt=(
            "You are DevBot, a senior software engineer. Give precise, working "
            "code and explain the root cause of bugs before proposing fixes."
        ),
    ),
    AgentDescriptor(
        id=AgentId.RESEARCHER,
        name="ResearchBot",
        description="Real-time web search and research",
        capabilities=(
            "Real-time web search",
            "Fact verification",
            "News and current events",
            "Academic research",
            "Documentation lookup",
        ),
        keywords=(
            "search", "find", "research", "what is", "tell me about", "news",
            "latest", "current", "how does", "explain", "define", "compare",
            "article", "source", "reference", "look up", "information",
        ),
        tools=("web_search",),
        system_prompt=(
            "You are ResearchBot. Answer with verified facts, cite sources, and "
            "say clearly when information may be out of date."
        ),
    ),
    AgentDescriptor(
        id=AgentId.SECRETARY,
        name="SecretaryBot",
        description="Personal productivity assistant with Google Workspace access",
        capabilities=(
            "Email management (Gmail)",
            "Calendar scheduling",
            "Google Drive file access",
            "Meeting coordination",
            "Task reminders",
        ),
        keywords=(
            "calendar", "schedule", "email", "meeting", "appointment", "gmail",
            "drive", "remind", "task", "event", "invite", "reschedule", "cancel",
            "book", "agenda", "availability", "send email", "check email",
        ),
        tools=(
            "gmail_list_messages", "gmail_send_message",
            "calendar_list_events", "calendar_create_event", "calendar_delete_event",
            "drive_search_files",
        ),
        system_prompt=(
            "You are SecretaryBot. Manage email, calendar and documents. Always "
            "confirm before sending messages or changing events."
        ),
    ),
    AgentDescriptor(
        id=AgentId.HOME,
        name="HomeBot",
        description="Smart home controller with Home Assistant integration",
        capabilities=(
            "Light control",
            "Thermostat/HVAC control",
            "Lock management",
            "Scene activation",
            "Device status monitoring",
        ),
        keywords=(
            "light", "lamp", "thermostat", "temperature", "turn on", "turn off",
            "lock", "door", "blinds", "fan", "hvac", "scene", "automation",
            "smart home", "device", "sensor", "climate", "brightness", "dim",
        ),
        tools=("control_device", "set_climate", "activate_scene", "get_device_state"),
        system_prompt=(
            "You are HomeBot. Control smart home devices through your tools and "
            "report the resulting device state briefly."
        ),
    ),
    AgentDescriptor(
        id=AgentId.FINANCE,
        name="FinanceAdvisor",
        description="Personal finance expert with access to financial data",
        capabilities=(
            "Balance sheet analysis",
            "Spending tracking and insights",
            "Bill management",
            "Subscription auditing",
            "Wealth projection",
            "Affordability analysis",
        ),
        keywords=(
            "money", "finance", "budget", "spending", "expense", "income", "save",
            "savings", "invest", "investment", "stock", "portfolio", "net worth",
            "account", "balance", "transaction", "bill", "payment", "subscription",
            "afford", "cost", "price", "bank", "credit", "debt", "loan", "wealth",
        ),
        tools=(
            "get_balance_sheet", "get_spending_summary", "get_upcoming_bills",
            "find_subscriptions", "can_i_afford", "project_wealth",
        ),
        system_prompt=(
            "You are FinanceAdvisor. Ground every answer in the user's financial "
            "data and state assumptions behind projections."
        ),
    ),
    AgentDescriptor(
        id=AgentId.IMAGEGEN,
        name="ImageGen",
        description="Image generation and editing from text descriptions",
        capabilities=(
            "Image generation",
            "Image editing",
            "Diagram creation",
            "Visual analysis",
        ),
        keywords=(
            "image", "picture", "draw", "generate image", "create image",
            "illustration", "logo", "artwork", "sketch", "diagram", "photo",
        ),
        tools=("generate_image", "edit_image", "analyze_image"),
        system_prompt=(
            "You are ImageGen. Turn requests into detailed image prompts and "
            "describe what you produced."
        ),
    ),
    AgentDescriptor(
        id=AgentId.PERSONALITY,
        name="Q8",
        description="Friendly conversational AI for general chat and assistance",
        capabilities=(
            "General conversation",
            "Creative writing",
            "Brainstorming",
            "Emotional support",
            "Fun interactions",
        ),
        keywords=(
            "hello", "hi", "hey", "thanks", "thank you", "how are you", "joke",
            "story", "chat", "talk", "help", "advice", "opinion", "think",
            "feel", "recommend", "suggest", "idea", "creative", "write",
        ),
        tools=("get_current_datetime", "calculate", "get_weather"),
        system_prompt=(
            "You are Q8, a warm and witty general assistant. Keep answers "
            "helpful and conversational."
        ),
    ),
)


def build_default_registry() -> CapabilityRegistry:
    """Return a registry loaded with the built-in agent table."""
    return CapabilityRegistry(DEFAULT_DESCRIPTORS)
