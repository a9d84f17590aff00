"""ralph-loop - run coding agents over a task backlog until a target is reached."""

from importlib.metadata import PackageNotFoundError, version

from ralph_loop.config import LoopConfig, load_config
from ralph_loop.orchestrator import Orchestrator
from ralph_loop.schemas import AgentBackend, PipelineState, StepName

__all__ = ["AgentBackend", "LoopConfig", "Orchestrator", "PipelineState", "StepName", "load_config"]

try:
    __version__ = version("ralph-loop")
except PackageNotFoundError:
    __version__ = "0.0.0"
