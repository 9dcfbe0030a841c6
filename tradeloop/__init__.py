"""Event-driven trading engine core: market feeds, simulated execution, events, commands, traders and engine."""

__version__ = "0.1.0"

__all__ = ["command", "data", "engine", "event", "execution", "trader"]