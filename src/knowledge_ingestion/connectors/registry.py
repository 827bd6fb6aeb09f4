from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from knowledge_ingestion.connectors.base import Connector
from knowledge_ingestion.connectors.configs import GitHubConfig, JiraConfig, SlackConfig
from knowledge_ingestion.errors import InvalidConfiguration

ConnectorFactory = Callable[[BaseModel], Connector]


class ConnectorRegistry:
    """Registry of connector kinds: config schema plus optional factory."""

    def __init__(self) -> None:
        self._schemas: dict[str, type[BaseModel]] = {}
        self._factories: dict[str, ConnectorFactory] = {}

    def register(
        self,
        kind: str,
        config_model: type[BaseModel],
        factory: ConnectorFactory | None = None,
    ) -> None:
        self._schemas[kind] = config_model
        if factory is not None:
            self._factories[kind] = factory

    def register_factory(self, kind: str, factory: ConnectorFactory) -> None:
        if kind not in self._schemas:
            raise KeyError(f"Unknown connector kind: {kind}")
        self._factories[kind] = factory

    def list_kinds(self) -> list[str]:
        return list(self._schemas.keys())

    def validate(self, kind: str, configuration: dict[str, Any] | None) -> BaseModel:
        """Parse `configuration` with the schema registered for `kind`."""
        model = self._schemas.get(kind)
        if model is None:
            raise InvalidConfiguration(f"Unknown connector kind: {kind!r}")

        data = dict(configuration or {})
        declared = data.setdefault("kind", kind)
        if declared != kind:
            raise InvalidConfiguration(
                f"Configuration declares kind {declared!r} but source kind is {kind!r}"
            )
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise InvalidConfiguration(
                f"Invalid {kind} configuration: {e.error_count()} error(s)",
                errors=e.errors(
                    include_url=False, include_context=False, include_input=False
                ),
            ) from e

    def normalize(self, kind: str, configuration: dict[str, Any] | None) -> dict[str, Any]:
        """Validated configuration as stored on the source row."""
        return self.validate(kind, configuration).model_dump(
            mode="json", exclude={"kind"}
        )

    def build(self, kind: str, configuration: dict[str, Any] | None) -> Connector:
        config = self.validate(kind, configuration)
        factory = self._factories.get(kind)
        if factory is None:
            raise InvalidConfiguration(f"No connector installed for kind {kind!r}")
        return factory(config)


def default_registry() -> ConnectorRegistry:
    registry = ConnectorRegistry()
    registry.register("github", GitHubConfig)
    registry.register("jira", JiraConfig)
    registry.register("slack", SlackConfig)
    return registry


_registry: ConnectorRegistry | None = None


def get_connector_registry() -> ConnectorRegistry:
    global _registry
    if _registry is None:
        _registry = default_registry()
    return _registry
