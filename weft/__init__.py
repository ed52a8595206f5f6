"""weft: declarative workflow execution engine for agent and tool pipelines."""

__version__ = "0.1.0"
