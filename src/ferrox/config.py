# config.py
# Configuration surface: process settings plus declarative agent/chain specs.
#
# Agents and chains are described as data and built once at startup. Action
# names in an AgentConfig refer to a catalog of Actions and ActionGroups the
# integrator assembles; model ids are turned into clients by a factory.

from typing import Callable

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ferrox.actions import DEFAULT_ACTION_TIMEOUT, Action, ActionGroup, ActionRegistry
from ferrox.agent import DEFAULT_MAX_ITERATIONS, Agent
from ferrox.chain import HANDOFFS, Adapter, Chain
from ferrox.errors import ChainConfigError, UnknownAction
from ferrox.model_client import DEFAULT_BASE_URL, ModelClient
from ferrox.orchestrator import DEFAULT_HISTORY_CONVERSATIONS

ActionCatalog = dict[str, Action | ActionGroup]
ClientFactory = Callable[[str], ModelClient]


class FerroxSettings(BaseSettings):
    """Process-level settings.

    Settings can be provided via environment variables with FERROX_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="FERROX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Model back-end
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    default_model: str = "openai/gpt-4o"
    temperature: float | None = 0.7

    # Loop bounds
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    action_timeout: float = Field(default=DEFAULT_ACTION_TIMEOUT, gt=0)

    # Orchestrator
    run_timeout: float | None = Field(default=120.0, gt=0)
    history_turns: int = Field(default=0, ge=0)
    history_conversations: int = Field(default=DEFAULT_HISTORY_CONVERSATIONS, ge=1)
    concurrent_sessions: bool = False

    # Reference actions
    coingecko_api_key: str | None = None

    log_level: str = "INFO"


class AgentConfig(BaseModel):
    name: str = Field(..., min_length=1)
    system_prompt: str
    model: str | None = Field(default=None, description="Falls back to FerroxSettings.default_model.")
    actions: list[str] = Field(default_factory=list, description="Action or action-group names from the catalog.")
    max_iterations: int | None = Field(default=None, ge=1)
    action_timeout: float | None = Field(default=None, gt=0)


class ChainConfig(BaseModel):
    name: str = "default"
    agents: list[AgentConfig] = Field(..., min_length=1)
    handoffs: list[str | None] | None = Field(
        default=None,
        description="Adapter names between consecutive agents; None entries mean plain text hand-off.",
    )

    @model_validator(mode="after")
    def _handoffs_fit_agents(self) -> "ChainConfig":
        if self.handoffs is not None and len(self.handoffs) != len(self.agents) - 1:
            raise ValueError(
                f"Chain '{self.name}' has {len(self.agents)} agent(s) and needs "
                f"{len(self.agents) - 1} handoff(s), got {len(self.handoffs)}."
            )
        return self


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_agent(
    config: AgentConfig,
    catalog: ActionCatalog,
    client_factory: ClientFactory,
    settings: FerroxSettings | None = None,
) -> Agent:
    settings = settings or FerroxSettings()
    registry = ActionRegistry()
    for name in config.actions:
        entry = catalog.get(name)
        if entry is None:
            raise UnknownAction(f"Agent '{config.name}' references '{name}', which is not in the action catalog.")
        if isinstance(entry, ActionGroup):
            registry.include(entry)
        else:
            registry.add(entry)

    return Agent(
        name=config.name,
        client=client_factory(config.model or settings.default_model),
        system_prompt=config.system_prompt,
        registry=registry,
        max_iterations=config.max_iterations or settings.max_iterations,
        action_timeout=config.action_timeout or settings.action_timeout,
    )


def build_chains(
    configs: list[ChainConfig],
    catalog: ActionCatalog,
    client_factory: ClientFactory,
    settings: FerroxSettings | None = None,
    handoffs: dict[str, Adapter] | None = None,
) -> list[Chain]:
    """
    Build every chain, sharing one Agent instance per agent name.

    The same name must always carry the same AgentConfig; an agent reused
    across chains is built once and held by reference.
    """
    settings = settings or FerroxSettings()
    handoffs = handoffs if handoffs is not None else HANDOFFS
    agents: dict[str, tuple[AgentConfig, Agent]] = {}
    chains: list[Chain] = []

    for chain_config in configs:
        members: list[Agent] = []
        for agent_config in chain_config.agents:
            known = agents.get(agent_config.name)
            if known is None:
                agent = build_agent(agent_config, catalog, client_factory, settings)
                agents[agent_config.name] = (agent_config, agent)
            elif known[0] != agent_config:
                raise ChainConfigError(f"Agent '{agent_config.name}' is configured differently in two chains.")
            else:
                agent = known[1]
            members.append(agent)

        adapters: list[Adapter | None] | None = None
        if chain_config.handoffs is not None:
            adapters = []
            for name in chain_config.handoffs:
                if name is not None and name not in handoffs:
                    raise ChainConfigError(f"Unknown handoff '{name}' in chain '{chain_config.name}'.")
                adapters.append(handoffs[name] if name else None)

        chains.append(Chain(members, adapters, name=chain_config.name))
    return chains


def build_chain(
    config: ChainConfig,
    catalog: ActionCatalog,
    client_factory: ClientFactory,
    settings: FerroxSettings | None = None,
    handoffs: dict[str, Adapter] | None = None,
) -> Chain:
    return build_chains([config], catalog, client_factory, settings, handoffs)[0]
