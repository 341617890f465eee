"""Phase orchestration engine for agent-driven epic and story execution."""

__version__ = "0.1.0"
