"""Agent context services: orchestration, tool recording, references and fragments."""

from folio.agents.context import AgentContextService, delete_context, list_contexts
from folio.agents.fragments import FragmentLineage
from folio.agents.metadata import fetch_metadata
from folio.agents.references import ReferenceExtractor
from folio.agents.runs import TransformationRun
from folio.agents.tools import ToolRegistry, ToolSession, with_recording

__all__ = [
    "AgentContextService",
    "FragmentLineage",
    "ReferenceExtractor",
    "ToolRegistry",
    "ToolSession",
    "TransformationRun",
    "delete_context",
    "fetch_metadata",
    "list_contexts",
    "with_recording",
]
