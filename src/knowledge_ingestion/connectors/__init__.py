"""
Connectors pull raw records from external knowledge sources.

Only the contract and the per-kind configuration schemas live here; the
HTTP clients for each external system are installed by the deployment via
`get_connector_registry().register_factory(kind, factory)`.
"""

from knowledge_ingestion.connectors.base import Connector, RawRecord
from knowledge_ingestion.connectors.configs import (
    ConnectorConfig,
    GitHubConfig,
    JiraConfig,
    SlackConfig,
)
from knowledge_ingestion.connectors.registry import (
    ConnectorRegistry,
    default_registry,
    get_connector_registry,
)

__all__ = [
    "Connector",
    "ConnectorConfig",
    "ConnectorRegistry",
    "GitHubConfig",
    "JiraConfig",
    "RawRecord",
    "SlackConfig",
    "default_registry",
    "get_connector_registry",
]
