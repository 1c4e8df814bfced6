"""planact: PLAN/ACT workflow protocol over a graph of project memory files."""

__version__ = "0.1.0"
