"""Commands that an engine and its traders act on, and engine errors."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class EngineError(Exception):
    """Base class for errors raised by the engine and its traders."""


class BuilderIncompleteError(EngineError):
    """Raised when a builder is missing a required attribute."""

    def __init__(self, attribute: str) -> None:
        super().__init__(
            f"Failed to build struct due to missing attributes: {attribute}"
        )
        self.attribute = attribute


class RepositoryInteractionError(EngineError):
    """Raised when the portfolio's repository cannot be used."""

    def __init__(self, source: BaseException | None = None) -> None:
        super().__init__("Failed to interact with repository")
        self.source = source
        if source is not None:
            self.__cause__ = source


class CommandKind(enum.Enum):
    """Kinds of command an engine accepts."""

    FETCH_OPEN_POSITIONS = "FetchOpenPositions"
    TERMINATE = "Terminate"
    EXIT_ALL_POSITIONS = "ExitAllPositions"
    EXIT_POSITION = "ExitPosition"


@dataclass(frozen=True)
class Command:
    """A command with the data it carries.

    FETCH_OPEN_POSITIONS carries the reply target (for instance a
    ``concurrent.futures.Future``) that receives the open positions,
    TERMINATE carries a message and EXIT_POSITION the market to exit.
    """

    kind: CommandKind
    payload: Any = None

    @staticmethod
    def fetch_open_positions(reply: Any) -> Command:
        """Ask the engine for its open positions, delivered to ``reply``."""
        return Command(CommandKind.FETCH_OPEN_POSITIONS, reply)

    @staticmethod
    def terminate(message: str) -> Command:
        """Stop every trader of the engine."""
        return Command(CommandKind.TERMINATE, message)

    @staticmethod
    def exit_all_positions() -> Command:
        """Exit every open position of the engine."""
        return Command(CommandKind.EXIT_ALL_POSITIONS)

    @staticmethod
    def exit_position(market: Any) -> Command:
        """Exit the position held in one market."""
        return Command(CommandKind.EXIT_POSITION, market)