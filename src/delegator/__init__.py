"""Agent Delegator — contract-based delegation between autonomous agents."""

__version__ = "0.1.0"
