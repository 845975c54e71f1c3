"""
HTTP clients for the services the enrollment engine depends on.
"""

from .base import CollaboratorClient
from .pipeline import PipelineClient
from .sequence_definitions import SequenceDefinitionClient

__all__ = ["CollaboratorClient", "PipelineClient", "SequenceDefinitionClient"]
