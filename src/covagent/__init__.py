"""Coverage-driven unit test generation with a language model."""

from .orchestrator import CoverAgent, FinalReport
from .settings import AgentSettings

__all__ = ["AgentSettings", "CoverAgent", "FinalReport"]
__version__ = "0.1.0"
