"""Capability registry: model-facing function names resolved to actions."""

from __future__ import annotations

import builtins
import json
from dataclasses import dataclass
from typing import Any

from hopline.agents import ActionDefinition, AgentCatalog, AgentConfig, CapabilityBinding
from hopline.errors import UnknownCapabilityError


@dataclass(frozen=True)
class ResolvedCapability:
    """A binding joined with its action definition."""

    agent_id: str
    binding: CapabilityBinding
    action: ActionDefinition

    @property
    def name(self) -> str:
        return self.binding.function_name

    @property
    def description(self) -> str:
        return self.binding.description or self.action.description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.binding.input_schema or self.action.input_schema

    @property
    def backend_config_json(self) -> str:
        return json.dumps(self.binding.backend_config, ensure_ascii=False)

    def to_model_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class CapabilityRegistry:
    """Read-only view over agent configuration for the engine."""

    def __init__(self, catalog: AgentCatalog) -> None:
        self._catalog = catalog
        self._resolved: dict[str, dict[str, ResolvedCapability]] = {}
        for agent in catalog.agents:
            self._resolved[agent.developer_name] = {
                binding.function_name: ResolvedCapability(
                    agent_id=agent.developer_name,
                    binding=binding,
                    action=catalog.action(binding.action),
                )
                for binding in agent.capabilities
            }

    @property
    def catalog(self) -> AgentCatalog:
        return self._catalog

    def agent(self, agent_id: str) -> AgentConfig:
        return self._catalog.agent(agent_id)

    def has(self, agent_id: str, function_name: str) -> bool:
        return function_name in self._resolved.get(agent_id, {})

    def get(self, agent_id: str, function_name: str) -> ResolvedCapability | None:
        return self._resolved.get(agent_id, {}).get(function_name)

    def resolve(self, agent_id: str, function_name: str) -> ResolvedCapability:
        resolved = self.get(agent_id, function_name)
        if resolved is None:
            raise UnknownCapabilityError(f"{agent_id} has no capability named {function_name}")
        return resolved

    def capabilities(self, agent_id: str) -> builtins.list[ResolvedCapability]:
        return sorted(self._resolved.get(agent_id, {}).values(), key=lambda item: item.name)

    def model_tools(self, agent_id: str) -> builtins.list[dict[str, Any]]:
        return [capability.to_model_tool() for capability in self.capabilities(agent_id)]

    def compact_rows(self, agent_id: str) -> builtins.list[str]:
        rows: builtins.list[str] = []
        for capability in self.capabilities(agent_id):
            flags = []
            if capability.binding.requires_confirmation:
                flags.append("confirm")
            if capability.binding.prerequisites:
                flags.append(f"after {'+'.join(capability.binding.prerequisites)}")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            kind = capability.action.implementation_kind
            rows.append(f"{capability.name} -> {capability.action.name} ({kind}){suffix}")
        return rows
