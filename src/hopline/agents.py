"""Agent configuration models and the YAML catalog loader."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Annotated, Any, Literal

import jsonschema
import yaml
from pydantic import BaseModel, Field, ValidationError

from hopline.errors import ConfigurationError
from hopline.types import ImplementationKind, PrerequisiteScope

DEFAULT_SUMMARY_PROMPT = (
    "Summarize the conversation below for your own future reference. Keep facts, decisions, "
    "open questions and results of actions. Merge it with the existing summary if one is given."
)
EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

DEFAULT_CATALOG: dict[str, Any] = {
    "actions": [
        {
            "name": "echo",
            "implementation_kind": "native",
            "implementation_ref": "echo",
            "description": "Repeat the given text back.",
            "input_schema": {
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
            "config_schema": {"type": "object", "properties": {"prefix": {"type": "string"}}},
        },
        {
            "name": "current_time",
            "implementation_kind": "native",
            "implementation_ref": "current_time",
            "description": "Current UTC time in ISO 8601.",
        },
    ],
    "agents": [
        {
            "developer_name": "assistant",
            "label": "Assistant",
            "system_prompt": "You are a helpful assistant.",
            "welcome_message": "Hi! How can I help?",
            "capabilities": [
                {"function_name": "echo", "action": "echo"},
                {"function_name": "current_time", "action": "current_time"},
            ],
        }
    ],
}


class BufferWindowConfig(BaseModel):
    strategy: Literal["buffer_window"] = "buffer_window"
    size: int = Field(default=10, ge=1, description="Most recent messages to keep")


class SummaryBufferConfig(BaseModel):
    strategy: Literal["summary_buffer"] = "summary_buffer"
    retention_turns: int = Field(default=3, ge=1, description="Recent turns kept verbatim")
    threshold_messages: int = Field(default=20, ge=1, description="Raw buffer size that triggers summarization")
    summary_prompt: str = DEFAULT_SUMMARY_PROMPT


MemoryConfig = Annotated[BufferWindowConfig | SummaryBufferConfig, Field(discriminator="strategy")]


class ActionDefinition(BaseModel):
    """Reusable action implementation reference."""

    name: str = Field(..., min_length=1)
    implementation_kind: ImplementationKind
    implementation_ref: str = Field(..., min_length=1, description="Native name, module:attr, or workflow name")
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: dict(EMPTY_OBJECT_SCHEMA))
    config_schema: dict[str, Any] | None = None


class CapabilityBinding(BaseModel):
    """Agent-scoped function name exposed to the model."""

    function_name: str = Field(..., pattern=r"^[A-Za-z0-9_-]{1,64}$")
    action: str = Field(..., min_length=1)
    description: str = ""
    input_schema: dict[str, Any] | None = None
    backend_config: dict[str, Any] = Field(default_factory=dict)
    prerequisites: list[str] = Field(default_factory=list)
    prerequisite_scope: PrerequisiteScope = PrerequisiteScope.CURRENT_TURN_ONLY
    requires_confirmation: bool = False


class AgentConfig(BaseModel):
    developer_name: str = Field(..., min_length=1)
    label: str = ""
    system_prompt: str = ""
    welcome_message: str | None = None
    transient_messages_enabled: bool = True
    memory: MemoryConfig = Field(default_factory=BufferWindowConfig)
    capabilities: list[CapabilityBinding] = Field(default_factory=list)

    def capability(self, function_name: str) -> CapabilityBinding | None:
        for binding in self.capabilities:
            if binding.function_name == function_name:
                return binding
        return None


class AgentCatalog(BaseModel):
    actions: list[ActionDefinition] = Field(default_factory=list)
    agents: list[AgentConfig] = Field(default_factory=list)

    def agent(self, developer_name: str) -> AgentConfig:
        for agent in self.agents:
            if agent.developer_name == developer_name:
                return agent
        raise ConfigurationError(f"unknown agent: {developer_name}")

    def action(self, name: str) -> ActionDefinition:
        for action in self.actions:
            if action.name == name:
                return action
        raise ConfigurationError(f"unknown action: {name}")


def parse_agent_catalog(data: Mapping[str, Any]) -> AgentCatalog:
    """Validate a raw catalog mapping, including cross references."""
    try:
        catalog = AgentCatalog.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigurationError(f"invalid agent catalog: {exc}") from exc
    _check_catalog(catalog)
    return catalog


def load_agent_catalog(path: Path) -> AgentCatalog:
    """Load the agent catalog from a YAML file."""
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"cannot read agent catalog {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"agent catalog {path} must be a mapping")
    return parse_agent_catalog(payload)


def load_agent_catalog_or_default(path: Path) -> AgentCatalog:
    """Load the YAML catalog, falling back to the built-in one when the file does not exist."""
    if not path.exists():
        return parse_agent_catalog(DEFAULT_CATALOG)
    return load_agent_catalog(path)


def _check_catalog(catalog: AgentCatalog) -> None:
    action_names = [action.name for action in catalog.actions]
    if len(set(action_names)) != len(action_names):
        raise ConfigurationError("duplicate action names in catalog")
    agent_names = [agent.developer_name for agent in catalog.agents]
    if len(set(agent_names)) != len(agent_names):
        raise ConfigurationError("duplicate agent developer names in catalog")

    actions = {action.name: action for action in catalog.actions}
    for agent in catalog.agents:
        seen: set[str] = set()
        for binding in agent.capabilities:
            if binding.function_name in seen:
                raise ConfigurationError(f"agent {agent.developer_name} binds {binding.function_name} twice")
            seen.add(binding.function_name)

            action = actions.get(binding.action)
            if action is None:
                raise ConfigurationError(
                    f"agent {agent.developer_name} capability {binding.function_name} "
                    f"references unknown action {binding.action}"
                )
            where = f"{agent.developer_name}.{binding.function_name}"
            _check_schema(binding.input_schema or action.input_schema, where)
            if action.config_schema is not None:
                try:
                    jsonschema.validate(binding.backend_config, action.config_schema)
                except jsonschema.ValidationError as exc:
                    raise ConfigurationError(
                        f"backend config of {agent.developer_name}.{binding.function_name} is invalid: {exc.message}"
                    ) from exc

        for binding in agent.capabilities:
            unknown = [name for name in binding.prerequisites if name not in seen]
            if unknown:
                raise ConfigurationError(
                    f"{agent.developer_name}.{binding.function_name} has unknown prerequisites: {', '.join(unknown)}"
                )


def _check_schema(schema: dict[str, Any], owner: str) -> None:
    validator_cls = jsonschema.validators.validator_for(schema)
    try:
        validator_cls.check_schema(schema)
    except jsonschema.SchemaError as exc:
        raise ConfigurationError(f"input schema of {owner} is invalid: {exc.message}") from exc
